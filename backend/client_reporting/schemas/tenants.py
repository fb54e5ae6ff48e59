"""Agency and client records."""

from datetime import datetime
from enum import Enum

from pydantic import EmailStr, Field

from client_reporting.schemas.common import CamelSchema


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class ReportSchedule(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class Agency(CamelSchema):
    """A tenant. API keys are never stored on the record, only their hash."""

    id: str
    name: str
    billing_email: EmailStr
    subscription_status: SubscriptionStatus = SubscriptionStatus.TRIAL
    created_at: datetime
    updated_at: datetime


class Client(CamelSchema):
    """An agency's customer; reports are emailed to ``email``."""

    id: str
    agency_id: str
    name: str = Field(min_length=1, max_length=200)
    email: EmailStr
    report_schedule: ReportSchedule = ReportSchedule.WEEKLY
    last_report_sent_at: datetime | None = None
    created_at: datetime
