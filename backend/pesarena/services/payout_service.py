"""
Prize Payout Service

Pays tournament winners over M-Pesa B2C and applies the asynchronous B2C
result callbacks.

Prize split: 60% / 25% / 10% of the pool, each rounded half-up to whole
shillings. The arena fee is whatever remains.
"""
import asyncio
import logging
import uuid
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings
from ..db.models import PayoutModel, utcnow
from ..exceptions import ConflictError, GatewayError, ValidationError
from ..models.callbacks import B2CResult
from ..models.payouts import (
    PayoutRecord,
    PayoutStatus,
    PayoutSummary,
    PayoutWinners,
    PrizeBreakdown,
)
from .mpesa_client import MpesaClient, normalize_phone

logger = logging.getLogger(__name__)

PRIZE_SHARES = (Decimal("0.60"), Decimal("0.25"), Decimal("0.10"))

# position, remarks, occasion
PRIZE_POSITIONS: List[Tuple[str, str, str]] = [
    ("1st Place", "PES ARENA Tournament 1st Prize", "Tournament Winner"),
    ("2nd Place", "PES ARENA Tournament 2nd Prize", "Tournament Runner-up"),
    ("3rd Place", "PES ARENA Tournament 3rd Prize", "Tournament Third Place"),
]


def calculate_prizes(total_pool: int) -> PrizeBreakdown:
    """
    Split a prize pool.

    Example:
        calculate_prizes(10000) -> 6000 / 2500 / 1000, arena fee 500
    """
    pool = Decimal(total_pool)
    if pool <= 0:
        raise ValidationError("Prize pool must be positive", details={"total_pool": total_pool})

    first, second, third = (
        int((pool * share).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        for share in PRIZE_SHARES
    )
    return PrizeBreakdown(
        total_pool=int(pool),
        first_place=first,
        second_place=second,
        third_place=third,
        arena_fee=int(pool) - (first + second + third),
    )


def _to_record(row: PayoutModel) -> PayoutRecord:
    return PayoutRecord(
        id=row.id,
        tournament_id=row.tournament_id,
        position=row.position,
        amount=row.amount,
        phone=row.phone,
        conversation_id=row.conversation_id,
        originator_conversation_id=row.originator_conversation_id,
        status=PayoutStatus(row.status),
        result_desc=row.result_desc,
        receipt_reference=row.receipt_reference,
        created_at=row.created_at,
        resolved_at=row.resolved_at,
    )


class PayoutService:
    """Sends prize money and records B2C results."""

    def __init__(
        self,
        mpesa: MpesaClient,
        session_factory: async_sessionmaker,
        settings: Settings,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self._mpesa = mpesa
        self._session_factory = session_factory
        self._settings = settings
        self._sleep = sleep

    async def pay_out(self, tournament_id: str, total_pool: int, winners: PayoutWinners) -> PayoutSummary:
        """
        Pay the three winners of a tournament.

        Transfers run one after another with a short delay between them. A
        rejected transfer is recorded and does not stop the remaining ones.

        Raises:
            ValidationError: bad pool, prize below 1 KES, or bad winner phone
            ConflictError: the tournament already has sent or completed payouts
            AuthError: token acquisition failed (nothing was sent)
        """
        prizes = calculate_prizes(total_pool)
        amounts = [prizes.first_place, prizes.second_place, prizes.third_place]
        if min(amounts) < 1:
            raise ValidationError(
                "Prize pool too small to pay every winner",
                details={"total_pool": total_pool}
            )

        country_code = self._settings.mpesa_country_code
        phones = [
            normalize_phone(winners.first_place, country_code),
            normalize_phone(winners.second_place, country_code),
            normalize_phone(winners.third_place, country_code),
        ]

        await self._ensure_not_paid(tournament_id)

        logger.info(
            f"Starting payouts for tournament {tournament_id}: pool={prizes.total_pool}, "
            f"prizes={amounts}, fee={prizes.arena_fee}"
        )
        token = await self._mpesa.acquire_token()

        results: List[PayoutRecord] = []
        for index, ((position, remarks, occasion), amount, phone) in enumerate(
            zip(PRIZE_POSITIONS, amounts, phones)
        ):
            if index:
                await self._sleep(self._settings.payout_request_delay_seconds)
            results.append(
                await self._send(tournament_id, position, amount, phone, remarks, occasion, token)
            )

        initiated = sum(1 for r in results if r.status is PayoutStatus.INITIATED)
        logger.info(
            f"Payouts for tournament {tournament_id}: {initiated} initiated, "
            f"{len(results) - initiated} failed"
        )
        return PayoutSummary(
            tournament_id=tournament_id,
            prizes=prizes,
            payouts_initiated=initiated,
            payouts_failed=len(results) - initiated,
            results=results,
        )

    async def _ensure_not_paid(self, tournament_id: str) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PayoutModel.id)
                .where(
                    PayoutModel.tournament_id == tournament_id,
                    PayoutModel.status.in_([PayoutStatus.INITIATED.value, PayoutStatus.COMPLETED.value]),
                )
                .limit(1)
            )
            existing = result.scalar_one_or_none()

        if existing is not None:
            raise ConflictError(
                "Prizes for this tournament have already been paid out",
                details={"tournament_id": tournament_id, "payout_id": existing}
            )

    async def _send(
        self,
        tournament_id: str,
        position: str,
        amount: int,
        phone: str,
        remarks: str,
        occasion: str,
        token: str
    ) -> PayoutRecord:
        row = PayoutModel(
            id=f"PAY_{uuid.uuid4().hex[:16].upper()}",
            tournament_id=tournament_id,
            position=position,
            amount=amount,
            phone=phone,
            created_at=utcnow(),
        )

        try:
            response = await self._mpesa.initiate_b2c(
                token=token,
                amount=amount,
                phone=phone,
                remarks=remarks,
                occasion=occasion,
                result_url=self._settings.b2c_result_url,
                timeout_url=self._settings.b2c_result_url,
            )
        except GatewayError as e:
            logger.error(f"B2C payment for {position} rejected: {e.message}")
            row.status = PayoutStatus.REJECTED.value
            row.result_desc = e.description
            row.resolved_at = utcnow()
        else:
            logger.info(f"B2C payment for {position} initiated: conversation_id={response.conversation_id}")
            row.status = PayoutStatus.INITIATED.value
            row.conversation_id = response.conversation_id
            row.originator_conversation_id = response.originator_conversation_id
            row.result_desc = response.response_description

        async with self._session_factory() as session:
            session.add(row)
            await session.commit()
            return _to_record(row)

    async def record_result(self, result: B2CResult) -> Optional[PayoutRecord]:
        """
        Apply a B2C result callback to its payout, once.

        Returns:
            The payout record, or None for an unknown conversation id
        """
        if result.succeeded:
            values = {
                "status": PayoutStatus.COMPLETED.value,
                "receipt_reference": result.receipt_reference,
            }
        else:
            values = {"status": PayoutStatus.FAILED.value}
        values["result_desc"] = result.result_desc
        values["resolved_at"] = utcnow()

        async with self._session_factory() as session:
            outcome = await session.execute(
                update(PayoutModel)
                .where(
                    PayoutModel.conversation_id == result.conversation_id,
                    PayoutModel.status == PayoutStatus.INITIATED.value,
                )
                .values(**values)
            )
            await session.commit()

            row = (
                await session.execute(
                    select(PayoutModel).where(PayoutModel.conversation_id == result.conversation_id)
                )
            ).scalar_one_or_none()

        if row is None:
            logger.warning(f"B2C result for unknown conversation_id={result.conversation_id} ignored")
            return None

        record = _to_record(row)
        if outcome.rowcount == 1:
            logger.info(
                f"Payout {record.id} ({record.position}) {record.status.value}: "
                f"receipt={record.receipt_reference}"
            )
        else:
            logger.info(f"Duplicate B2C result for payout {record.id} ignored (already {record.status.value})")
        return record

    async def list_for_tournament(self, tournament_id: str) -> List[PayoutRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PayoutModel)
                .where(PayoutModel.tournament_id == tournament_id)
                .order_by(PayoutModel.created_at)
            )
            return [_to_record(row) for row in result.scalars().all()]
