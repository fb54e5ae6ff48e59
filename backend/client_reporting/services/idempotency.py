"""
Idempotency ledger for the report send operation.

Callers may send an Idempotency-Key header. For a given (agency, client, key)
the first successful response is stored for 24 hours and replayed verbatim to
later requests with the same payload; a different payload under the same key
is a conflict and never re-runs the operation.

Records live at ``idempotency:{agency_id}:{client_id}:{key}`` and are one of:
- in_progress: short-lived marker written with a conditional put before the
  operation runs, so two concurrent first attempts cannot both proceed
- completed: the stored response, written only after the operation succeeds

Failure policy:
- Reading the ledger gates a side effect, so a store failure there is
  reported as UNAVAILABLE (fail closed), never as a new request
- Writing the completed record happens after the side effect; failures are
  logged and swallowed
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from client_reporting.core.config import settings
from client_reporting.core.logging_config import format_security_event
from client_reporting.core.metrics import track_idempotency
from client_reporting.services.kv_store import Clock, KeyValueStore, StoreUnavailableError

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.idempotency")

STATE_IN_PROGRESS = "in_progress"
STATE_COMPLETED = "completed"


def _canonical_json(data: Any) -> str:
    """Canonical JSON: sorted keys at every depth, no whitespace."""
    return json.dumps(data, separators=(",", ":"), sort_keys=True, ensure_ascii=False, default=str)


def fingerprint_payload(payload: Any) -> str:
    """SHA-256 of the canonical payload; key order never changes the result."""
    return hashlib.sha256(_canonical_json(payload).encode("utf-8")).hexdigest()


class IdempotencyOutcome(str, Enum):
    NEW = "new"
    REPLAY = "replay"
    CONFLICT = "conflict"
    IN_PROGRESS = "in_progress"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class IdempotencyCheck:
    outcome: IdempotencyOutcome
    fingerprint: str
    cached_response: dict[str, Any] | None = None

    @property
    def is_new(self) -> bool:
        return self.outcome == IdempotencyOutcome.NEW


class IdempotencyLedger:
    """Replay/conflict detection backed by the key/value store."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock = time.time,
        ttl_seconds: int | None = None,
        in_progress_ttl_seconds: int | None = None,
    ):
        self._store = store
        self._clock = clock
        self._ttl = ttl_seconds or settings.IDEMPOTENCY_TTL_SECONDS
        self._in_progress_ttl = in_progress_ttl_seconds or settings.IDEMPOTENCY_IN_PROGRESS_TTL_SECONDS

    @staticmethod
    def storage_key(key: str, scope: str, sub_scope: str) -> str:
        return f"idempotency:{scope}:{sub_scope}:{key}"

    def _record(
        self,
        state: str,
        key: str,
        scope: str,
        sub_scope: str,
        fingerprint: str,
        response: dict[str, Any] | None = None,
    ) -> str:
        record = {
            "state": state,
            "key": key,
            "agencyId": scope,
            "clientId": sub_scope,
            "requestHash": fingerprint,
            "createdAt": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
        }
        if response is not None:
            record["response"] = response
        return json.dumps(record, separators=(",", ":"))

    def _classify(self, raw: str | None, fingerprint: str) -> IdempotencyCheck:
        if raw is None:
            return IdempotencyCheck(IdempotencyOutcome.NEW, fingerprint)

        try:
            record = json.loads(raw)
            stored_hash = record["requestHash"]
            state = record.get("state", STATE_COMPLETED)
        except (ValueError, KeyError, TypeError, AttributeError):
            # Unreadable record: the key cannot be trusted for replay or reuse
            logger.error("Unreadable idempotency record", extra={"event_type": "idempotency.corrupt_record"})
            return IdempotencyCheck(IdempotencyOutcome.CONFLICT, fingerprint)

        if stored_hash != fingerprint:
            return IdempotencyCheck(IdempotencyOutcome.CONFLICT, fingerprint)
        if state == STATE_IN_PROGRESS:
            return IdempotencyCheck(IdempotencyOutcome.IN_PROGRESS, fingerprint)
        return IdempotencyCheck(IdempotencyOutcome.REPLAY, fingerprint, record.get("response"))

    def _report(self, check: IdempotencyCheck, scope: str, sub_scope: str) -> IdempotencyCheck:
        track_idempotency(check.outcome.value)
        if check.outcome == IdempotencyOutcome.CONFLICT:
            security_logger.warning(
                "Idempotency key reused with a different payload",
                extra=format_security_event(
                    event_type="security.idempotency.conflict",
                    severity="warning",
                    description="Idempotency key reused with a different payload",
                    agency_id=scope,
                    client_id=sub_scope,
                    reason="IDEMPOTENCY_KEY_REUSE_MISMATCH",
                ),
            )
        return check

    async def check(self, key: str, scope: str, sub_scope: str, payload: Any) -> IdempotencyCheck:
        """Classify an attempt as new, replay, conflict, in progress or unavailable."""
        fingerprint = fingerprint_payload(payload)
        try:
            raw = await self._store.get(self.storage_key(key, scope, sub_scope))
        except StoreUnavailableError:
            logger.warning(
                "Idempotency check failed, store unavailable",
                extra={"event_type": "idempotency.check_unavailable", "agency_id": scope, "client_id": sub_scope},
            )
            return self._report(IdempotencyCheck(IdempotencyOutcome.UNAVAILABLE, fingerprint), scope, sub_scope)
        return self._report(self._classify(raw, fingerprint), scope, sub_scope)

    async def reserve(self, key: str, scope: str, sub_scope: str, fingerprint: str) -> IdempotencyCheck:
        """Claim the key before running the operation.

        Returns NEW when this caller holds the reservation. When another
        request got there first, returns what that request left behind.
        """
        storage_key = self.storage_key(key, scope, sub_scope)
        marker = self._record(STATE_IN_PROGRESS, key, scope, sub_scope, fingerprint)
        try:
            if await self._store.put_if_absent(storage_key, marker, self._in_progress_ttl):
                return IdempotencyCheck(IdempotencyOutcome.NEW, fingerprint)
            raw = await self._store.get(storage_key)
        except StoreUnavailableError:
            return self._report(IdempotencyCheck(IdempotencyOutcome.UNAVAILABLE, fingerprint), scope, sub_scope)

        check = self._classify(raw, fingerprint)
        if check.is_new:
            # The winner's marker vanished between our two calls
            check = IdempotencyCheck(IdempotencyOutcome.IN_PROGRESS, fingerprint)
        return self._report(check, scope, sub_scope)

    async def store(
        self,
        key: str,
        scope: str,
        sub_scope: str,
        fingerprint: str,
        response: dict[str, Any],
    ) -> bool:
        """Persist the completed response. Never raises; returns success."""
        try:
            record = self._record(STATE_COMPLETED, key, scope, sub_scope, fingerprint, response)
            await self._store.put(self.storage_key(key, scope, sub_scope), record, self._ttl)
            return True
        except Exception:
            logger.exception(
                "Failed to store idempotency record after successful send",
                extra={"event_type": "idempotency.store_failed", "agency_id": scope, "client_id": sub_scope},
            )
            return False

    async def release(self, key: str, scope: str, sub_scope: str, fingerprint: str) -> None:
        """Drop our in-progress marker so the key can be retried."""
        storage_key = self.storage_key(key, scope, sub_scope)
        try:
            raw = await self._store.get(storage_key)
            if raw is None:
                return
            record = json.loads(raw)
            if record.get("state") == STATE_IN_PROGRESS and record.get("requestHash") == fingerprint:
                await self._store.delete(storage_key)
        except (StoreUnavailableError, ValueError, AttributeError):
            # The marker expires on its own after the in-progress TTL
            logger.warning(
                "Failed to release idempotency reservation",
                extra={"event_type": "idempotency.release_failed", "agency_id": scope, "client_id": sub_scope},
            )
