"""
Reconciliation Sweep

Read-only report of payments that need a human look:
- attempts still pending long after their push (callback never arrived)
- completed payments whose registration was never marked paid (the
  callback receiver failed between its two writes)

Nothing is repaired here; findings are logged as ReconciliationGap and
returned for the caller.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from ..db.models import utcnow
from ..exceptions import ReconciliationGap
from ..models.payments import PaymentAttempt, PaymentState
from ..models.registrations import RegistrationPaymentStatus
from .payment_store import PaymentStore
from .registration_store import RegistrationStore

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationReport:
    checked_at: datetime
    stale_pending: List[PaymentAttempt] = field(default_factory=list)
    unapplied_registrations: List[PaymentAttempt] = field(default_factory=list)

    @property
    def gap_count(self) -> int:
        return len(self.stale_pending) + len(self.unapplied_registrations)

    def to_dict(self) -> dict:
        return {
            "checkedAt": self.checked_at.isoformat(),
            "stalePending": [a.id for a in self.stale_pending],
            "unappliedRegistrations": [a.id for a in self.unapplied_registrations],
            "gapCount": self.gap_count,
        }


class ReconciliationService:

    def __init__(
        self,
        payments: PaymentStore,
        registrations: RegistrationStore,
        stale_after_minutes: int = 10,
        lookback_hours: int = 24,
        batch_size: int = 500
    ):
        self._payments = payments
        self._registrations = registrations
        self._stale_after = timedelta(minutes=stale_after_minutes)
        self._lookback = timedelta(hours=lookback_hours)
        self._batch_size = batch_size

    async def sweep(self, now: Optional[datetime] = None) -> ReconciliationReport:
        now = now or utcnow()
        report = ReconciliationReport(checked_at=now)

        report.stale_pending = await self._payments.list_attempts(
            state=PaymentState.PENDING,
            created_before=now - self._stale_after,
            limit=self._batch_size,
        )
        for attempt in report.stale_pending:
            self._log_gap(
                "Payment still pending without a callback",
                attempt,
                age_minutes=int((now - attempt.created_at).total_seconds() // 60),
            )

        completed = await self._payments.list_attempts(
            state=PaymentState.COMPLETED,
            resolved_after=now - self._lookback,
            limit=self._batch_size,
        )
        for attempt in completed:
            registration = await self._registrations.get(attempt.requester_id, attempt.subject_id)
            if registration is None:
                continue
            if registration.payment_status is not RegistrationPaymentStatus.COMPLETED:
                report.unapplied_registrations.append(attempt)
                self._log_gap(
                    "Completed payment not applied to registration",
                    attempt,
                    registration_id=registration.id,
                )

        logger.info(
            f"Reconciliation sweep: {len(report.stale_pending)} stale pending, "
            f"{len(report.unapplied_registrations)} unapplied registrations"
        )
        return report

    @staticmethod
    def _log_gap(message: str, attempt: PaymentAttempt, **details) -> None:
        gap = ReconciliationGap(
            message,
            details={"transaction_id": attempt.id, "correlation_id": attempt.correlation_id, **details}
        )
        logger.warning(f"{gap.error_code}: {gap.message} {gap.details}")
