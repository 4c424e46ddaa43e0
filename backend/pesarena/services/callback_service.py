"""
Callback Receiver Service

Applies M-Pesa STK push results. The HTTP layer acknowledges the provider
before processing starts, so nothing here may raise back to the provider:
every failure after acknowledgement is logged as a ReconciliationGap.

Processing order:
1. Resolve the attempt by correlation id (first resolution wins)
2. If the stored attempt is completed, mark the linked registration paid

Step 2 also runs for redelivered callbacks, so a crash between the two
writes is repaired by the provider's retry.
"""
import logging
from typing import Any, Dict, Optional

from ..exceptions import ReconciliationGap, ValidationError
from ..models.callbacks import StkCallback, parse_stk_callback
from ..models.payments import PaymentOutcome, PaymentState, ResolveResult
from .payment_store import PaymentStore
from .registration_store import RegistrationStore

logger = logging.getLogger(__name__)

ACKNOWLEDGEMENT = {"ResultCode": 0, "ResultDesc": "Success"}


class CallbackReceiver:
    """Turns provider callbacks into store updates."""

    def __init__(self, payments: PaymentStore, registrations: Optional[RegistrationStore] = None):
        self._payments = payments
        self._registrations = registrations

    @staticmethod
    def acknowledgement() -> Dict[str, Any]:
        """Body returned to the provider for every delivery."""
        return dict(ACKNOWLEDGEMENT)

    @staticmethod
    def parse(payload: Any) -> StkCallback:
        return parse_stk_callback(payload)

    async def process(self, payload: Any) -> Optional[ResolveResult]:
        """
        Parse and apply one callback delivery. Never raises.

        Returns:
            ResolveResult, or None when the payload could not be processed
        """
        try:
            callback = self.parse(payload)
        except ValidationError as e:
            logger.error(f"Dropping malformed STK callback: {e}")
            return None

        try:
            return await self.apply(callback)
        except Exception as e:
            gap = ReconciliationGap(
                "STK callback processing failed after acknowledgement",
                details={
                    "correlation_id": callback.correlation_id,
                    "result_code": callback.result_code,
                    "error": f"{type(e).__name__}: {e}",
                }
            )
            logger.error(f"{gap.error_code}: {gap.message} {gap.details}", exc_info=True)
            return None

    async def apply(self, callback: StkCallback) -> ResolveResult:
        """Resolve the attempt and propagate a completed payment to its registration."""
        logger.info(
            f"STK callback received: checkout_request_id={callback.correlation_id}, "
            f"result_code={callback.result_code}"
        )

        outcome = PaymentOutcome(
            result_code=callback.result_code,
            description=callback.result_desc,
            receipt_reference=callback.receipt_reference if callback.succeeded else None,
        )
        result = await self._payments.resolve(callback.correlation_id, outcome)

        attempt = result.attempt
        if attempt is None or attempt.state is not PaymentState.COMPLETED:
            return result

        if self._registrations is not None:
            record = await self._registrations.mark_payment_completed(
                attempt.requester_id,
                attempt.subject_id,
                attempt.receipt_reference,
            )
            if record is None:
                logger.warning(
                    f"Payment {attempt.id} completed but user {attempt.requester_id} has no "
                    f"registration for tournament {attempt.subject_id}"
                )

        return result
