"""
Agency and client records on the key/value store.

This is the authorization collaborator for the report endpoints: it resolves
an API key to an agency and tells callers which agency owns a client.

Storage layout:
    agency:{agency_id}                 Agency JSON
    agency:{agency_id}:clients         set of client ids
    agency_api_key:{sha256(api_key)}   agency id
    client:{client_id}                 Client JSON
    index:agencies                     set of agency ids

Index updates use the store's atomic set operations, so two agencies created
at the same moment can never drop each other from the index.
"""

import hashlib
import logging
import secrets
import time
import uuid
from datetime import datetime, timezone

from client_reporting.core.errors import PaymentRequiredError
from client_reporting.services.artifact_store import ArtifactStore, ClientScope, DeletionScope
from client_reporting.services.kv_store import Clock, KeyValueStore
from client_reporting.schemas.tenants import Agency, Client, ReportSchedule, SubscriptionStatus

logger = logging.getLogger(__name__)

AGENCY_INDEX_KEY = "index:agencies"
ACTIVE_SUBSCRIPTION_STATUSES = frozenset({SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE})


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return f"cr_{secrets.token_urlsafe(32)}"


def require_active_subscription(agency: Agency) -> None:
    """Raise 402 unless the agency is on a trial or paid plan."""
    if agency.subscription_status not in ACTIVE_SUBSCRIPTION_STATUSES:
        raise PaymentRequiredError(agency.subscription_status.value)


class TenantDirectory:
    """Read/write access to agencies and their clients."""

    def __init__(self, store: KeyValueStore, clock: Clock = time.time):
        self._store = store
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @staticmethod
    def _agency_key(agency_id: str) -> str:
        return f"agency:{agency_id}"

    @staticmethod
    def _agency_clients_key(agency_id: str) -> str:
        return f"agency:{agency_id}:clients"

    @staticmethod
    def _client_key(client_id: str) -> str:
        return f"client:{client_id}"

    @staticmethod
    def _api_key_lookup(api_key: str) -> str:
        return f"agency_api_key:{hash_api_key(api_key)}"

    # ==========================================================================
    # Agencies
    # ==========================================================================

    async def create_agency(
        self,
        name: str,
        billing_email: str,
        subscription_status: SubscriptionStatus = SubscriptionStatus.TRIAL,
    ) -> tuple[Agency, str]:
        """Create an agency and return it with its plaintext API key.

        The key is shown exactly once; only its hash is stored.
        """
        now = self._now()
        agency = Agency(
            id=str(uuid.uuid4()),
            name=name,
            billing_email=billing_email,
            subscription_status=subscription_status,
            created_at=now,
            updated_at=now,
        )
        api_key = generate_api_key()

        await self._store.put(self._agency_key(agency.id), agency.model_dump_json())
        await self._store.put(self._api_key_lookup(api_key), agency.id)
        await self._store.add_to_set(AGENCY_INDEX_KEY, agency.id)

        logger.info(
            "Agency created",
            extra={"event_type": "tenant.agency_created", "agency_id": agency.id},
        )
        return agency, api_key

    async def get_agency(self, agency_id: str) -> Agency | None:
        raw = await self._store.get(self._agency_key(agency_id))
        if raw is None:
            return None
        return Agency.model_validate_json(raw)

    async def authenticate(self, api_key: str) -> Agency | None:
        """Resolve an API key to its agency, or None."""
        if not api_key:
            return None
        agency_id = await self._store.get(self._api_key_lookup(api_key))
        if agency_id is None:
            return None
        return await self.get_agency(agency_id)

    async def set_subscription_status(self, agency_id: str, status: SubscriptionStatus) -> Agency | None:
        agency = await self.get_agency(agency_id)
        if agency is None:
            return None
        agency = agency.model_copy(update={"subscription_status": status, "updated_at": self._now()})
        await self._store.put(self._agency_key(agency_id), agency.model_dump_json())
        return agency

    async def list_agency_ids(self) -> list[str]:
        return sorted(await self._store.set_members(AGENCY_INDEX_KEY))

    # ==========================================================================
    # Clients
    # ==========================================================================

    async def create_client(
        self,
        agency_id: str,
        name: str,
        email: str,
        report_schedule: ReportSchedule = ReportSchedule.WEEKLY,
    ) -> Client:
        client = Client(
            id=str(uuid.uuid4()),
            agency_id=agency_id,
            name=name,
            email=email,
            report_schedule=report_schedule,
            created_at=self._now(),
        )
        await self._store.put(self._client_key(client.id), client.model_dump_json())
        await self._store.add_to_set(self._agency_clients_key(agency_id), client.id)
        return client

    async def get_client(self, client_id: str) -> Client | None:
        raw = await self._store.get(self._client_key(client_id))
        if raw is None:
            return None
        return Client.model_validate_json(raw)

    async def list_clients(self, agency_id: str) -> list[Client]:
        clients = []
        for client_id in sorted(await self._store.set_members(self._agency_clients_key(agency_id))):
            client = await self.get_client(client_id)
            if client is not None:
                clients.append(client)
        return clients

    async def mark_report_sent(self, client: Client) -> Client:
        updated = client.model_copy(update={"last_report_sent_at": self._now()})
        await self._store.put(self._client_key(client.id), updated.model_dump_json())
        return updated

    async def delete_client(
        self,
        scope: ClientScope,
        deletion: DeletionScope,
        artifacts: ArtifactStore | None = None,
    ) -> int:
        """Delete a client record, and with CASCADE its stored artifacts.

        Returns the number of artifacts removed. Raises LookupError when the
        client does not exist under ``scope.agency_id``.
        """
        client = await self.get_client(scope.client_id)
        if client is None or client.agency_id != scope.agency_id:
            raise LookupError(scope.client_id)

        removed = 0
        if deletion == DeletionScope.CASCADE:
            if artifacts is None:
                raise ValueError("Cascade deletion needs an artifact store")
            removed = await artifacts.delete_client_artifacts(scope)

        await self._store.delete(self._client_key(scope.client_id))
        await self._store.remove_from_set(self._agency_clients_key(scope.agency_id), scope.client_id)

        logger.info(
            "Client deleted",
            extra={
                "event_type": "tenant.client_deleted",
                "agency_id": scope.agency_id,
                "client_id": scope.client_id,
                "deletion_scope": deletion.value,
                "artifacts_removed": removed,
            },
        )
        return removed
