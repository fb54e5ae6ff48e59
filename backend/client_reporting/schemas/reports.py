"""Report payloads and responses."""

from datetime import date

from pydantic import Field

from client_reporting.schemas.common import CamelSchema


class TopPage(CamelSchema):
    path: str = Field(max_length=2048)
    pageviews: int = Field(ge=0)


class ReportMetrics(CamelSchema):
    """Aggregated analytics for one reporting period."""

    period_start: date
    period_end: date
    sessions: int = Field(ge=0)
    users: int = Field(ge=0)
    pageviews: int = Field(ge=0)
    top_pages: list[TopPage] = Field(default_factory=list, max_length=50)


class SignedUrlResponse(CamelSchema):
    url: str
    expires_at: int
    ttl: int


class ReportSendResult(CamelSchema):
    client_id: str
    report_id: str
    pdf_key: str
    filename: str
    sent_at: str
