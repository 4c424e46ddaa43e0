"""
Pending-Payment Store

Durable record of every STK push attempt, keyed by the local transaction id
and by the provider's correlation id (CheckoutRequestID).

Rules:
- An attempt leaves `pending` once. resolve() is a single conditional UPDATE,
  so concurrent callbacks for the same correlation id cannot both win.
- The callback path only resolves; it never creates records.
- Records are never deleted.

Every mutation is published on the change feed under both the id and the
correlation id so watchers can subscribe with either.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db.models import PaymentModel, utcnow
from ..exceptions import AttemptNotFoundError, ConflictError, ValidationError
from ..models.payments import (
    PaymentAttempt,
    PaymentOutcome,
    PaymentState,
    ResolveResult,
)
from .change_feed import ChangeFeed, Predicate, Subscription

logger = logging.getLogger(__name__)


def _to_attempt(row: PaymentModel) -> PaymentAttempt:
    return PaymentAttempt(
        id=row.id,
        correlation_id=row.correlation_id,
        merchant_request_id=row.merchant_request_id,
        subject_id=row.subject_id,
        requester_id=row.requester_id,
        amount=row.amount,
        phone=row.phone,
        state=PaymentState(row.state),
        receipt_reference=row.receipt_reference,
        failure_reason=row.failure_reason,
        result_code=row.result_code,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


class PaymentStore:
    """Persistence and change notification for PaymentAttempt records."""

    def __init__(self, session_factory: async_sessionmaker, feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self._feed = feed or ChangeFeed("payments")

    @property
    def feed(self) -> ChangeFeed:
        return self._feed

    def _publish(self, attempt: PaymentAttempt) -> None:
        self._feed.publish([attempt.id, attempt.correlation_id], attempt)

    # ========================================================================
    # Writes
    # ========================================================================

    async def create(self, attempt: PaymentAttempt) -> PaymentAttempt:
        """
        Persist a new pending attempt.

        Raises:
            ValidationError: attempt is not pending
            ConflictError: id or correlation id already exists
        """
        if attempt.state is not PaymentState.PENDING:
            raise ValidationError(
                "New payment attempts must be pending",
                details={"id": attempt.id, "state": attempt.state.value}
            )

        clashes = [PaymentModel.id == attempt.id]
        if attempt.correlation_id:
            clashes.append(PaymentModel.correlation_id == attempt.correlation_id)

        async with self._session_factory() as session:
            existing = await session.execute(select(PaymentModel.id).where(or_(*clashes)))
            if existing.first() is not None:
                raise ConflictError(
                    "Payment attempt already exists",
                    details={"id": attempt.id, "correlation_id": attempt.correlation_id}
                )

            row = PaymentModel(
                id=attempt.id,
                correlation_id=attempt.correlation_id,
                merchant_request_id=attempt.merchant_request_id,
                subject_id=attempt.subject_id,
                requester_id=attempt.requester_id,
                amount=attempt.amount,
                phone=attempt.phone,
                state=PaymentState.PENDING.value,
                created_at=attempt.created_at,
            )
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(
                    "Payment attempt already exists",
                    details={"id": attempt.id, "correlation_id": attempt.correlation_id}
                ) from e

            created = _to_attempt(row)

        logger.info(
            f"Created payment attempt: {created.id}, subject={created.subject_id}, "
            f"requester={created.requester_id}, amount={created.amount}"
        )
        self._publish(created)
        return created

    async def attach_correlation(
        self,
        attempt_id: str,
        correlation_id: str,
        merchant_request_id: Optional[str] = None
    ) -> PaymentAttempt:
        """
        Bind the provider's CheckoutRequestID to a pending attempt.

        Raises:
            AttemptNotFoundError: no attempt with this id
            ConflictError: already bound, no longer pending, or id taken
        """
        async with self._session_factory() as session:
            result = await session.execute(select(PaymentModel).where(PaymentModel.id == attempt_id))
            row = result.scalar_one_or_none()
            if row is None:
                raise AttemptNotFoundError(
                    f"Payment attempt not found: {attempt_id}",
                    details={"id": attempt_id}
                )
            if row.correlation_id is not None:
                raise ConflictError(
                    "Payment attempt already has a correlation id",
                    details={"id": attempt_id, "correlation_id": row.correlation_id}
                )
            if row.state != PaymentState.PENDING.value:
                raise ConflictError(
                    "Payment attempt is no longer pending",
                    details={"id": attempt_id, "state": row.state}
                )

            taken = await session.execute(
                select(PaymentModel.id).where(PaymentModel.correlation_id == correlation_id)
            )
            if taken.first() is not None:
                raise ConflictError(
                    "Correlation id already bound to another attempt",
                    details={"correlation_id": correlation_id}
                )

            row.correlation_id = correlation_id
            row.merchant_request_id = merchant_request_id
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(
                    "Correlation id already bound to another attempt",
                    details={"correlation_id": correlation_id}
                ) from e

            attempt = _to_attempt(row)

        logger.info(f"Bound payment attempt {attempt_id} to checkout_request_id={correlation_id}")
        self._publish(attempt)
        return attempt

    async def abandon(self, attempt_id: str, reason: str) -> PaymentAttempt:
        """
        Close an unbound pending attempt as failed (the push never reached
        the provider, so no callback will ever arrive for it).

        Raises:
            AttemptNotFoundError: no attempt with this id
        """
        async with self._session_factory() as session:
            result = await session.execute(
                update(PaymentModel)
                .where(
                    PaymentModel.id == attempt_id,
                    PaymentModel.state == PaymentState.PENDING.value,
                    PaymentModel.correlation_id.is_(None),
                )
                .values(
                    state=PaymentState.FAILED.value,
                    failure_reason=reason or "Payment request was not accepted",
                    resolved_at=utcnow(),
                )
            )
            await session.commit()
            transitioned = result.rowcount == 1

        attempt = await self.get(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(
                f"Payment attempt not found: {attempt_id}",
                details={"id": attempt_id}
            )

        if transitioned:
            logger.info(f"Abandoned payment attempt {attempt_id}: {reason}")
            self._publish(attempt)
        else:
            logger.warning(
                f"Payment attempt {attempt_id} not abandoned: "
                f"state={attempt.state.value}, correlation_id={attempt.correlation_id}"
            )
        return attempt

    async def resolve(self, correlation_id: str, outcome: PaymentOutcome) -> ResolveResult:
        """
        Move the attempt with this correlation id out of pending.

        The first resolution wins. A later resolution for the same id is a
        logged no-op and leaves the stored record (resolved_at included)
        untouched. An unknown correlation id is logged and ignored.
        """
        if outcome.succeeded:
            values = {
                "state": PaymentState.COMPLETED.value,
                "receipt_reference": outcome.receipt_reference,
            }
        else:
            values = {
                "state": PaymentState.FAILED.value,
                "failure_reason": outcome.description or f"Payment failed (code={outcome.result_code})",
            }
        values["result_code"] = outcome.result_code
        values["resolved_at"] = utcnow()

        async with self._session_factory() as session:
            result = await session.execute(
                update(PaymentModel)
                .where(
                    PaymentModel.correlation_id == correlation_id,
                    PaymentModel.state == PaymentState.PENDING.value,
                )
                .values(**values)
            )
            await session.commit()
            transitioned = result.rowcount == 1

        attempt = await self.get_by_correlation(correlation_id)

        if attempt is None:
            logger.warning(f"Resolution for unknown checkout_request_id={correlation_id} ignored")
            return ResolveResult(attempt=None, transitioned=False)

        if not transitioned:
            logger.info(
                f"Duplicate resolution for {attempt.id} ignored "
                f"(already {attempt.state.value})"
            )
            return ResolveResult(attempt=attempt, transitioned=False)

        logger.info(
            f"Resolved payment attempt {attempt.id}: state={attempt.state.value}, "
            f"result_code={outcome.result_code}"
        )
        self._publish(attempt)
        return ResolveResult(attempt=attempt, transitioned=True)

    # ========================================================================
    # Reads
    # ========================================================================

    async def get(self, attempt_id: str) -> Optional[PaymentAttempt]:
        async with self._session_factory() as session:
            result = await session.execute(select(PaymentModel).where(PaymentModel.id == attempt_id))
            row = result.scalar_one_or_none()
            return _to_attempt(row) if row else None

    async def get_by_correlation(self, correlation_id: str) -> Optional[PaymentAttempt]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentModel).where(PaymentModel.correlation_id == correlation_id)
            )
            row = result.scalar_one_or_none()
            return _to_attempt(row) if row else None

    async def find_open_attempt(
        self,
        requester_id: str,
        subject_id: str,
        created_after: datetime
    ) -> Optional[PaymentAttempt]:
        """Most recent pending attempt by this requester for this subject."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentModel)
                .where(
                    PaymentModel.requester_id == requester_id,
                    PaymentModel.subject_id == subject_id,
                    PaymentModel.state == PaymentState.PENDING.value,
                    PaymentModel.created_at >= created_after,
                )
                .order_by(PaymentModel.created_at.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _to_attempt(row) if row else None

    async def list_attempts(
        self,
        state: Optional[PaymentState] = None,
        created_before: Optional[datetime] = None,
        resolved_after: Optional[datetime] = None,
        limit: int = 100
    ) -> List[PaymentAttempt]:
        """List attempts, newest first, with optional filters."""
        query = select(PaymentModel)
        if state is not None:
            query = query.where(PaymentModel.state == PaymentState(state).value)
        if created_before is not None:
            query = query.where(PaymentModel.created_at < created_before)
        if resolved_after is not None:
            query = query.where(PaymentModel.resolved_at >= resolved_after)
        query = query.order_by(PaymentModel.created_at.desc()).limit(limit)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_to_attempt(row) for row in result.scalars().all()]

    # ========================================================================
    # Watch
    # ========================================================================

    async def watch(self, key: str, predicate: Optional[Predicate] = None) -> Subscription:
        """
        Subscribe to changes of one attempt, by id or correlation id.

        The current snapshot (when the attempt exists) is offered right after
        subscribing, so a resolution that landed before the call is still
        observed. State only moves forward, so a consumer can stop at the
        first terminal record it sees. The caller must close() the handle.
        """
        subscription = self._feed.subscribe(key, predicate)
        try:
            snapshot = await self.get(key) or await self.get_by_correlation(key)
        except BaseException:
            subscription.close()
            raise
        if snapshot is not None:
            subscription.offer(snapshot)
        return subscription
