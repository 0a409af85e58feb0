"""Delivery worker for notification intents.

The worker polls the notification_intents table on a fixed interval. Each
tick claims a bounded batch of due intents in one short transaction
(``FOR UPDATE SKIP LOCKED`` plus pushing ``send_after`` forward by a lease),
so concurrent workers never pick the same rows. Sends happen outside that
transaction, and every outcome is committed per intent.
"""
from __future__ import annotations

import asyncio
import datetime
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from santadraw.core.clock import utcnow
from santadraw.core.config import DeliverySettings
from santadraw.core.logging import OPS_CHANNEL
from santadraw.db import NotificationIntent, NotificationType, SessionLocal, get_session, repo
from santadraw.services.errors import PermanentDeliveryFailure, TransientDeliveryFailure
from santadraw.services.transport import MailTransport


STRANDED_CLAIM_ERROR = "claim lease expired without a recorded outcome"


@dataclass(frozen=True)
class DeliveryReport:
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    exhausted: int = 0


@dataclass(frozen=True)
class ClaimedIntent:
    id: int
    type: NotificationType
    user_id: int
    group_id: int
    attempt_count: int
    address: str
    template_data: Dict[str, Any]


def retry_delay(attempt_count: int, base_seconds: int) -> datetime.timedelta:
    """Backoff after the given failed attempt: base, 2*base, 4*base, ..."""
    return datetime.timedelta(seconds=base_seconds * 2 ** max(attempt_count - 1, 0))


def _describe_user(user) -> str:
    if user is None:
        return "Your recipient"
    if user.display_name:
        return user.display_name
    if user.telegram_username:
        return f"@{user.telegram_username}"
    return f"user-{user.telegram_id}"


class DeliveryWorker:
    def __init__(
        self,
        transport: MailTransport,
        settings: DeliverySettings,
        session_factory=None,
        clock: Callable[[], datetime.datetime] = utcnow,
        on_exhausted: Optional[Callable[[PermanentDeliveryFailure], None]] = None,
    ) -> None:
        self._transport = transport
        self._settings = settings
        self._session_factory = session_factory or SessionLocal
        self._clock = clock
        self._on_exhausted = on_exhausted
        self._running = False
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._poll_loop())
        logger.bind(interval=self._settings.poll_interval_seconds).info("Delivery worker started")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Delivery worker stopped")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                report = await self.run_once()
                if report.claimed or report.exhausted:
                    logger.bind(**asdict(report)).info("Delivery batch processed")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.bind(error=str(exc)).exception("Delivery batch failed")
            await asyncio.sleep(self._settings.poll_interval_seconds)

    async def run_once(self) -> DeliveryReport:
        """Claim and process one batch. Returns what happened to it."""
        now = self._clock()
        exhausted = len(self.expire_stranded(now))
        claims = self.claim_batch(now)
        sent = failed = 0
        for index, claim in enumerate(claims):
            try:
                error = await self._deliver(claim)
            except asyncio.CancelledError:
                self._release(claims[index:])
                raise
            if error is None:
                self._record_success(claim)
                sent += 1
                continue
            failed += 1
            if self._record_failure(claim, error):
                exhausted += 1
        return DeliveryReport(claimed=len(claims), sent=sent, failed=failed, exhausted=exhausted)

    def claim_batch(self, now: datetime.datetime) -> List[ClaimedIntent]:
        lease = datetime.timedelta(seconds=self._settings.claim_ttl_seconds)
        claims: List[ClaimedIntent] = []
        with get_session(self._session_factory) as session:
            intents = repo.select_due_intents(
                session,
                now=now,
                max_attempts=self._settings.max_attempts,
                limit=self._settings.batch_size,
            )
            for intent in intents:
                intent.attempt_count += 1
                if intent.first_attempt_at is None:
                    intent.first_attempt_at = now
                intent.last_attempt_at = now
                intent.send_after = now + lease
                claims.append(self._build_claim(session, intent))
        return claims

    def expire_stranded(self, now: datetime.datetime) -> List[PermanentDeliveryFailure]:
        """Fail final-attempt claims whose worker died before recording an outcome.

        Such rows sit at the attempt limit with neither ``sent_at`` nor
        ``failed_at`` set, so the due-intent query never returns them again.
        """
        failures: List[PermanentDeliveryFailure] = []
        with get_session(self._session_factory) as session:
            intents = repo.select_stranded_intents(
                session,
                now=now,
                max_attempts=self._settings.max_attempts,
                limit=self._settings.batch_size,
            )
            for intent in intents:
                intent.failed_at = now
                if intent.last_error is None:
                    intent.last_error = STRANDED_CLAIM_ERROR
                failures.append(
                    PermanentDeliveryFailure(intent.id, intent.attempt_count, intent.last_error)
                )
        for failure in failures:
            self._report_exhausted(failure)
        return failures

    def _build_claim(self, session, intent: NotificationIntent) -> ClaimedIntent:
        group = intent.group
        template_data: Dict[str, Any] = {
            "group_id": intent.group_id,
            "group_name": group.name if group else None,
        }
        if group is not None and group.budget is not None:
            template_data["budget"] = f"{group.budget:.2f}"
        if intent.type == NotificationType.WISH_UPDATED:
            assignment = repo.get_assignment_for_giver(session, intent.group_id, intent.user_id)
            template_data["recipient_label"] = _describe_user(
                assignment.receiver if assignment else None
            )
        return ClaimedIntent(
            id=intent.id,
            type=intent.type,
            user_id=intent.user_id,
            group_id=intent.group_id,
            attempt_count=intent.attempt_count,
            address=str(intent.user.telegram_id),
            template_data=template_data,
        )

    async def _deliver(self, claim: ClaimedIntent) -> Optional[str]:
        """Send one intent. Returns None on success, else the error text."""
        try:
            result = await asyncio.wait_for(
                self._transport.send(claim.address, claim.type, claim.template_data),
                timeout=self._settings.send_timeout_seconds,
            )
            if not result.ok:
                raise TransientDeliveryFailure(
                    result.error_code or "unknown", result.error_message or "delivery failed"
                )
        except asyncio.TimeoutError:
            error = str(
                TransientDeliveryFailure(
                    "timeout", f"no answer within {self._settings.send_timeout_seconds}s"
                )
            )
        except TransientDeliveryFailure as exc:
            error = str(exc)
        except Exception as exc:
            error = str(TransientDeliveryFailure("exception", f"{type(exc).__name__}: {exc}"))
        else:
            return None

        logger.bind(
            intent_id=claim.id,
            type=claim.type.value,
            attempt=claim.attempt_count,
            max_attempts=self._settings.max_attempts,
        ).warning("Notification delivery failed: {error}", error=error)
        return error

    def _record_success(self, claim: ClaimedIntent) -> None:
        now = self._clock()
        with get_session(self._session_factory) as session:
            intent = repo.get_intent(session, claim.id)
            if intent is None:
                return
            intent.sent_at = now
            intent.last_error = None
        logger.bind(intent_id=claim.id, type=claim.type.value, attempt=claim.attempt_count).info(
            "Notification delivered"
        )

    def _record_failure(self, claim: ClaimedIntent, error: str) -> bool:
        """Store the failure and reschedule. Returns True once attempts are exhausted."""
        now = self._clock()
        with get_session(self._session_factory) as session:
            intent = repo.get_intent(session, claim.id)
            if intent is None or intent.sent_at is not None:
                return False
            intent.last_error = error
            attempts = intent.attempt_count
            if attempts < self._settings.max_attempts:
                delay = retry_delay(attempts, self._settings.retry_base_seconds)
                intent.send_after = now + delay
                logger.bind(intent_id=intent.id, attempt=attempts).info(
                    "Retrying notification in {seconds}s", seconds=int(delay.total_seconds())
                )
                return False
            intent.failed_at = now

        self._report_exhausted(PermanentDeliveryFailure(claim.id, attempts, error))
        return True

    def _report_exhausted(self, failure: PermanentDeliveryFailure) -> None:
        logger.bind(channel=OPS_CHANNEL, intent_id=failure.intent_id, attempts=failure.attempts).error(
            str(failure)
        )
        if self._on_exhausted is not None:
            self._on_exhausted(failure)

    def _release(self, claims: List[ClaimedIntent]) -> None:
        """Hand claimed but unfinished intents back to the queue."""
        if not claims:
            return
        now = self._clock()
        with get_session(self._session_factory) as session:
            for intent in repo.get_intents(session, [claim.id for claim in claims]):
                if intent.sent_at is not None or intent.failed_at is not None:
                    continue
                intent.attempt_count = max(intent.attempt_count - 1, 0)
                intent.send_after = now
        logger.bind(count=len(claims)).warning("Released unfinished notification claims")
