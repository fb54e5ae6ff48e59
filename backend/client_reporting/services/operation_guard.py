"""
Guarded execution of the report send.

Wraps the expensive generate-and-email operation with the idempotency ledger
and the per-client fixed-window rate limiter:

1. With an Idempotency-Key, consult the ledger first. A replay returns the
   stored response without consuming quota; a conflict is 409; a store
   failure is 503 (fail closed).
2. Take one attempt from the rate limiter; rejection is 429 with
   X-RateLimit-* and Retry-After.
3. With a key, reserve it (conditional write). A request that loses the race
   gives its quota back and answers from what the winner recorded. A
   cancellation while reserving is handled as in step 4.
4. Run the operation.
   - Cancelled: refund the attempt and release the reservation, so no
     quota is spent without a replay record
   - Failed: release the reservation so the key is not poisoned; the
     attempt stays spent. Unexpected errors surface as REPORT_SEND_FAILED
5. Record the response in the ledger (never fails the request).

Every outcome for a scoped request carries X-RateLimit-* headers.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from client_reporting.core.config import settings
from client_reporting.core.errors import (
    APIException,
    ConflictError,
    ErrorCode,
    InternalError,
    RateLimitError,
    ServiceUnavailableError,
)
from client_reporting.core.logging_config import format_security_event
from client_reporting.core.metrics import reports_sent_total
from client_reporting.services.idempotency import IdempotencyCheck, IdempotencyLedger, IdempotencyOutcome
from client_reporting.services.kv_store import Clock, StoreUnavailableError
from client_reporting.services.rate_limiter import FixedWindowRateLimiter, RateLimitDecision

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.ratelimit")

IN_PROGRESS_RETRY_AFTER_SECONDS = 5

Operation = Callable[[], Awaitable[dict[str, Any]]]


@dataclass
class GuardedResult:
    body: dict[str, Any]
    replayed: bool = False
    headers: dict[str, str] = field(default_factory=dict)


class ReportSendGuard:
    """Idempotency and rate limiting around one side-effecting operation."""

    def __init__(
        self,
        ledger: IdempotencyLedger,
        limiter: FixedWindowRateLimiter,
        clock: Clock = time.time,
        max_count: int | None = None,
        window_seconds: int | None = None,
    ):
        self._ledger = ledger
        self._limiter = limiter
        self._clock = clock
        self._max_count = max_count or settings.REPORT_SEND_RATE_LIMIT
        self._window = window_seconds or settings.REPORT_SEND_RATE_WINDOW_SECONDS

    @staticmethod
    def rate_limit_key(scope: str, sub_scope: str) -> str:
        return f"report_send:{scope}:{sub_scope}"

    async def _peek_headers(self, scope: str, sub_scope: str) -> dict[str, str]:
        try:
            decision = await self._limiter.peek(self.rate_limit_key(scope, sub_scope), self._window, self._max_count)
        except StoreUnavailableError:
            return {}
        return decision.headers()

    async def _settled(self, check: IdempotencyCheck, scope: str, sub_scope: str) -> GuardedResult:
        """Answer a request whose key is already claimed or unreadable."""
        if check.outcome == IdempotencyOutcome.REPLAY:
            body = dict(check.cached_response or {})
            body["replayed"] = True
            return GuardedResult(body=body, replayed=True, headers=await self._peek_headers(scope, sub_scope))

        if check.outcome == IdempotencyOutcome.CONFLICT:
            raise ConflictError(
                ErrorCode.IDEMPOTENCY_KEY_REUSE_MISMATCH,
                "Idempotency-Key was already used with a different request payload",
                headers=await self._peek_headers(scope, sub_scope),
            )

        if check.outcome == IdempotencyOutcome.IN_PROGRESS:
            headers = await self._peek_headers(scope, sub_scope)
            headers["Retry-After"] = str(IN_PROGRESS_RETRY_AFTER_SECONDS)
            raise ConflictError(
                ErrorCode.IDEMPOTENCY_REQUEST_IN_PROGRESS,
                "A request with this Idempotency-Key is still being processed",
                headers=headers,
            )

        raise ServiceUnavailableError(
            ErrorCode.IDEMPOTENCY_CHECK_FAILED,
            "Could not verify Idempotency-Key. Please retry.",
        )

    async def _acquire(self, scope: str, sub_scope: str) -> RateLimitDecision:
        try:
            decision = await self._limiter.try_acquire(
                self.rate_limit_key(scope, sub_scope), self._window, self._max_count
            )
        except StoreUnavailableError as e:
            raise ServiceUnavailableError(message="Rate limit state unavailable. Please retry.") from e

        if not decision.allowed:
            security_logger.warning(
                "Report send rate limit exceeded",
                extra=format_security_event(
                    event_type="security.ratelimit.report_send",
                    severity="warning",
                    description="Report send rate limit exceeded",
                    agency_id=scope,
                    client_id=sub_scope,
                    reason="RATE_LIMIT_EXCEEDED",
                    metadata={"limit": decision.limit, "reset_at": decision.reset_at},
                ),
            )
            raise RateLimitError(headers=decision.headers(), retry_after=decision.retry_after(self._clock()))
        return decision

    async def _abandon(self, scope: str, sub_scope: str, idempotency_key: str | None, fingerprint: str | None) -> None:
        await self._limiter.refund(self.rate_limit_key(scope, sub_scope), self._window)
        if idempotency_key:
            await self._ledger.release(idempotency_key, scope, sub_scope, fingerprint)

    async def _cancelled(self, scope: str, sub_scope: str, idempotency_key: str | None, fingerprint: str | None) -> None:
        logger.warning(
            "Report send cancelled, refunding attempt",
            extra={"event_type": "reports.send_cancelled", "agency_id": scope, "client_id": sub_scope},
        )
        await asyncio.shield(self._abandon(scope, sub_scope, idempotency_key, fingerprint))

    async def execute(
        self,
        scope: str,
        sub_scope: str,
        idempotency_key: str | None,
        payload: Any,
        operation: Operation,
    ) -> GuardedResult:
        """Run ``operation`` at most once per (scope, sub_scope, key, payload).

        Raises:
            APIException: conflict, rate limit or store failures (see module doc)
        """
        fingerprint = None
        if idempotency_key:
            check = await self._ledger.check(idempotency_key, scope, sub_scope, payload)
            if not check.is_new:
                return await self._settled(check, scope, sub_scope)
            fingerprint = check.fingerprint

        decision = await self._acquire(scope, sub_scope)

        if idempotency_key:
            try:
                reservation = await self._ledger.reserve(idempotency_key, scope, sub_scope, fingerprint)
            except asyncio.CancelledError:
                await self._cancelled(scope, sub_scope, idempotency_key, fingerprint)
                raise
            if not reservation.is_new:
                await self._limiter.refund(self.rate_limit_key(scope, sub_scope), self._window)
                return await self._settled(reservation, scope, sub_scope)

        try:
            body = await operation()
        except asyncio.CancelledError:
            reports_sent_total.labels(result="cancelled").inc()
            await self._cancelled(scope, sub_scope, idempotency_key, fingerprint)
            raise
        except Exception as e:
            reports_sent_total.labels(result="failure").inc()
            if idempotency_key:
                await asyncio.shield(self._ledger.release(idempotency_key, scope, sub_scope, fingerprint))
            if isinstance(e, APIException):
                e.headers = {**decision.headers(), **(e.headers or {})}
                raise
            logger.exception(
                "Report send failed",
                extra={"event_type": "reports.send_failed", "agency_id": scope, "client_id": sub_scope},
            )
            raise InternalError(
                ErrorCode.REPORT_SEND_FAILED,
                "Report could not be sent. It is safe to retry with the same Idempotency-Key.",
                headers=decision.headers(),
            ) from e

        reports_sent_total.labels(result="success").inc()
        if idempotency_key:
            await asyncio.shield(self._ledger.store(idempotency_key, scope, sub_scope, fingerprint, body))

        return GuardedResult(body=body, replayed=False, headers=decision.headers())
