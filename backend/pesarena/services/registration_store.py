"""
Registration Store

Tournament registrations and their payment gate. The payment callback
marks a registration paid and approved in one update; admins approve or
reject manually, and approval requires a completed payment.
"""
import logging
import uuid
from typing import List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..db.models import RegistrationModel, utcnow
from ..exceptions import AttemptNotFoundError, ConflictError, ValidationError
from ..models.registrations import (
    RegistrationPaymentStatus,
    RegistrationRecord,
    RegistrationStatus,
)
from .change_feed import ChangeFeed, Predicate, Subscription

logger = logging.getLogger(__name__)


def registration_key(user_id: str, tournament_id: str) -> Tuple[str, str]:
    return (user_id, tournament_id)


def _to_record(row: RegistrationModel) -> RegistrationRecord:
    return RegistrationRecord(
        id=row.id,
        user_id=row.user_id,
        tournament_id=row.tournament_id,
        tournament_name=row.tournament_name,
        gamer_tag=row.gamer_tag,
        status=RegistrationStatus(row.status),
        payment_status=RegistrationPaymentStatus(row.payment_status),
        receipt_reference=row.receipt_reference,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class RegistrationStore:
    """Persistence and change notification for tournament registrations."""

    def __init__(self, session_factory: async_sessionmaker, feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self._feed = feed or ChangeFeed("registrations")

    def _publish(self, record: RegistrationRecord) -> None:
        self._feed.publish([registration_key(record.user_id, record.tournament_id), record.id], record)

    async def create(
        self,
        user_id: str,
        tournament_id: str,
        tournament_name: Optional[str] = None,
        gamer_tag: Optional[str] = None
    ) -> RegistrationRecord:
        """
        Register a user for a tournament, payment pending.

        Raises:
            ConflictError: user already registered for this tournament
        """
        now = utcnow()
        row = RegistrationModel(
            id=f"REG_{uuid.uuid4().hex[:16].upper()}",
            user_id=user_id,
            tournament_id=tournament_id,
            tournament_name=tournament_name,
            gamer_tag=gamer_tag,
            status=RegistrationStatus.PENDING.value,
            payment_status=RegistrationPaymentStatus.PENDING.value,
            created_at=now,
            updated_at=now,
        )

        async with self._session_factory() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(
                    "Already registered for this tournament",
                    details={"user_id": user_id, "tournament_id": tournament_id}
                ) from e
            record = _to_record(row)

        logger.info(f"Created registration {record.id}: user={user_id}, tournament={tournament_id}")
        self._publish(record)
        return record

    async def get(self, user_id: str, tournament_id: str) -> Optional[RegistrationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RegistrationModel).where(
                    RegistrationModel.user_id == user_id,
                    RegistrationModel.tournament_id == tournament_id,
                )
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row else None

    async def get_by_id(self, registration_id: str) -> Optional[RegistrationRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RegistrationModel).where(RegistrationModel.id == registration_id)
            )
            row = result.scalar_one_or_none()
            return _to_record(row) if row else None

    async def list_for_tournament(
        self,
        tournament_id: str,
        status: Optional[RegistrationStatus] = None
    ) -> List[RegistrationRecord]:
        query = select(RegistrationModel).where(RegistrationModel.tournament_id == tournament_id)
        if status is not None:
            query = query.where(RegistrationModel.status == RegistrationStatus(status).value)
        query = query.order_by(RegistrationModel.created_at)

        async with self._session_factory() as session:
            result = await session.execute(query)
            return [_to_record(row) for row in result.scalars().all()]

    async def mark_payment_completed(
        self,
        user_id: str,
        tournament_id: str,
        receipt_reference: Optional[str]
    ) -> Optional[RegistrationRecord]:
        """
        Record the entry fee as paid. A pending registration is approved on
        its first payment; a rejected one stays rejected.

        Idempotent: applying the same receipt again changes nothing.

        Returns:
            Updated record, or None when the user has no registration
        """
        async with self._session_factory() as session:
            result = await session.execute(
                select(RegistrationModel).where(
                    RegistrationModel.user_id == user_id,
                    RegistrationModel.tournament_id == tournament_id,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                logger.warning(
                    f"No registration to mark paid: user={user_id}, tournament={tournament_id}"
                )
                return None

            was_paid = row.payment_status == RegistrationPaymentStatus.COMPLETED.value
            if was_paid and row.receipt_reference == receipt_reference:
                logger.debug(f"Registration {row.id} already marked paid")
                return _to_record(row)

            row.payment_status = RegistrationPaymentStatus.COMPLETED.value
            row.receipt_reference = receipt_reference
            # Only a first payment approves; an admin decision is never overridden
            if not was_paid and row.status == RegistrationStatus.PENDING.value:
                row.status = RegistrationStatus.APPROVED.value
            row.updated_at = utcnow()
            await session.commit()
            record = _to_record(row)

        logger.info(
            f"Registration {record.id} marked paid (receipt={receipt_reference}), "
            f"status={record.status.value}"
        )
        self._publish(record)
        return record

    async def approve(self, registration_id: str) -> RegistrationRecord:
        """
        Approve a registration manually.

        Raises:
            AttemptNotFoundError: unknown registration
            ValidationError: entry fee not paid yet
        """
        return await self._set_status(registration_id, RegistrationStatus.APPROVED)

    async def reject(self, registration_id: str) -> RegistrationRecord:
        """
        Reject a registration.

        Raises:
            AttemptNotFoundError: unknown registration
        """
        return await self._set_status(registration_id, RegistrationStatus.REJECTED)

    async def _set_status(self, registration_id: str, status: RegistrationStatus) -> RegistrationRecord:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RegistrationModel).where(RegistrationModel.id == registration_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                raise AttemptNotFoundError(
                    f"Registration not found: {registration_id}",
                    details={"registration_id": registration_id}
                )

            if (
                status is RegistrationStatus.APPROVED
                and row.payment_status != RegistrationPaymentStatus.COMPLETED.value
            ):
                raise ValidationError(
                    "Cannot approve a registration before payment is completed",
                    details={"registration_id": registration_id, "payment_status": row.payment_status}
                )

            row.status = status.value
            row.updated_at = utcnow()
            await session.commit()
            record = _to_record(row)

        logger.info(f"Registration {registration_id} set to {status.value}")
        self._publish(record)
        return record

    async def watch(
        self,
        user_id: str,
        tournament_id: str,
        predicate: Optional[Predicate] = None
    ) -> Subscription:
        """
        Subscribe to changes of one user's registration.

        The current record, if any, is offered immediately. The caller must
        close() the handle.
        """
        subscription = self._feed.subscribe(registration_key(user_id, tournament_id), predicate)
        try:
            snapshot = await self.get(user_id, tournament_id)
        except BaseException:
            subscription.close()
            raise
        if snapshot is not None:
            subscription.offer(snapshot)
        return subscription
