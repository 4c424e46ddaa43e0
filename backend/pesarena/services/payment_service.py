"""
Payment Initiation Service

Server side of the STK push endpoint. Validates input, de-duplicates
retries, persists the attempt and sends the push.

Order of operations:
1. Validate phone and amount (no network call on bad input)
2. De-duplicate: a retried transaction id or a recent open attempt for the
   same requester and tournament is returned without a new prompt
3. Create the attempt (pending, unbound)
4. Acquire a token and push
5. Bind the CheckoutRequestID to the attempt

Any failure in step 4 closes the attempt as failed and re-raises. A failure
in step 5 (push accepted, binding failed) is logged as a ReconciliationGap
with the CheckoutRequestID, and the attempt is closed the same way.
"""
import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Any, Optional

from ..config import Settings
from ..db.models import utcnow
from ..exceptions import ConflictError, PaymentError, ReconciliationGap, ValidationError
from ..models.payments import PaymentAttempt, PaymentState
from .mpesa_client import MpesaClient, normalize_phone, whole_shillings
from .payment_store import PaymentStore

logger = logging.getLogger(__name__)


def new_transaction_id() -> str:
    return f"TXN_{uuid.uuid4().hex[:16].upper()}"


class PaymentService:
    """Initiates STK push payments for tournament entry fees."""

    def __init__(self, mpesa: MpesaClient, payments: PaymentStore, settings: Settings):
        self._mpesa = mpesa
        self._payments = payments
        self._settings = settings

    async def initiate(
        self,
        requester_id: str,
        amount: Any,
        phone: str,
        subject_id: str,
        attempt_id: Optional[str] = None
    ) -> PaymentAttempt:
        """
        Start (or join) a payment for this requester and tournament.

        Args:
            requester_id: Paying user
            amount: Entry fee in KES
            phone: Payer MSISDN in any accepted format
            subject_id: Tournament id
            attempt_id: Client-generated transaction id, used for retry de-duplication

        Returns:
            Attempt bound to a correlation id (pending, or terminal when
            a retry finds it already resolved)

        Raises:
            ValidationError: bad phone or amount
            ConflictError: a retry of an attempt whose push is still in flight
            AuthError: token acquisition failed
            GatewayError: push rejected
            ReconciliationGap: push accepted but the attempt could not be bound
        """
        if not subject_id:
            raise ValidationError("Tournament id is required")

        msisdn = normalize_phone(phone, self._settings.mpesa_country_code)
        whole_amount = whole_shillings(amount)

        existing = await self._find_duplicate(requester_id, subject_id, attempt_id)
        if existing is not None:
            return existing

        attempt = PaymentAttempt(
            id=attempt_id or new_transaction_id(),
            subject_id=subject_id,
            requester_id=requester_id,
            amount=Decimal(whole_amount),
            phone=msisdn,
            state=PaymentState.PENDING,
            created_at=utcnow(),
        )
        attempt = await self._payments.create(attempt)

        try:
            token = await self._mpesa.acquire_token()
            response = await self._mpesa.initiate_push(
                amount=whole_amount,
                phone=msisdn,
                subject_id=subject_id,
                callback_url=self._settings.stk_callback_url,
                token=token,
            )
        except Exception as e:
            if isinstance(e, PaymentError):
                reason = e.message
                logger.warning(f"STK push for {attempt.id} failed: {e.error_code} - {e.message}")
            else:
                reason = "Payment request could not be sent"
                logger.error(f"STK push for {attempt.id} failed: {type(e).__name__}: {e}", exc_info=True)
            await self._abandon(attempt.id, reason)
            raise

        try:
            return await self._payments.attach_correlation(
                attempt.id,
                response.correlation_id,
                response.merchant_request_id,
            )
        except Exception as e:
            # The payer's phone was prompted but the attempt cannot receive the callback
            gap = ReconciliationGap(
                "STK push accepted but not recorded",
                details={
                    "transaction_id": attempt.id,
                    "correlation_id": response.correlation_id,
                    "merchant_request_id": response.merchant_request_id,
                    "error": f"{type(e).__name__}: {e}",
                }
            )
            logger.error(f"{gap.error_code}: {gap.message} {gap.details}", exc_info=True)
            await self._abandon(attempt.id, f"Push {response.correlation_id} sent but not recorded")
            raise gap from e

    async def _abandon(self, attempt_id: str, reason: str) -> None:
        try:
            await self._payments.abandon(attempt_id, reason)
        except Exception as e:
            logger.error(f"Could not close payment attempt {attempt_id}: {type(e).__name__}: {e}")

    async def _find_duplicate(
        self,
        requester_id: str,
        subject_id: str,
        attempt_id: Optional[str]
    ) -> Optional[PaymentAttempt]:
        if attempt_id:
            previous = await self._payments.get(attempt_id)
            if previous is not None:
                if previous.requester_id != requester_id:
                    raise ConflictError(
                        "Transaction id already used",
                        details={"transaction_id": attempt_id}
                    )
                if previous.correlation_id is None and previous.state is PaymentState.PENDING:
                    raise ConflictError(
                        "Payment request is still being sent",
                        details={"transaction_id": attempt_id}
                    )
                logger.info(f"Retried initiation for {attempt_id} returned existing attempt")
                return previous

        window_start = utcnow() - timedelta(seconds=self._settings.payment_timeout_seconds)
        open_attempt = await self._payments.find_open_attempt(requester_id, subject_id, window_start)
        if open_attempt is not None and open_attempt.correlation_id is not None:
            logger.info(
                f"Open attempt {open_attempt.id} reused for requester={requester_id}, "
                f"subject={subject_id}"
            )
            return open_attempt
        return None
