"""
Payment Orchestrator

Drives one payment from the payer's side: validate, ask the backend to send
the STK push, then wait on the payment's change feed for the callback to
resolve it.

State machine:
    idle -> initiating -> awaiting_callback -> resolved_success
                                             | resolved_failure
                                             | timed_out

The orchestrator never writes payment state. Giving up after the timeout
leaves the attempt pending; a late callback still resolves it.

Initiators:
- HttpPaymentInitiator: calls POST /api/payments/stk-push over HTTP
- LocalPaymentInitiator: calls PaymentService in the same process
"""
import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Protocol, Type

import httpx

from ..exceptions import (
    AttemptNotFoundError,
    AuthError,
    ConflictError,
    GatewayError,
    PaymentDeclinedError,
    PaymentError,
    PaymentTimeoutError,
    ValidationError,
)
from ..models.payments import PaymentAttempt, PaymentState
from ..models.registrations import RegistrationRecord, RegistrationStatus
from .mpesa_client import normalize_phone
from .payment_service import PaymentService, new_transaction_id
from .payment_store import PaymentStore
from .registration_store import RegistrationStore

logger = logging.getLogger(__name__)

STK_PUSH_PATH = "/api/payments/stk-push"


class OrchestratorState(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_CALLBACK = "awaiting_callback"
    RESOLVED_SUCCESS = "resolved_success"
    RESOLVED_FAILURE = "resolved_failure"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class InitiationResult:
    transaction_id: str
    correlation_id: Optional[str]
    merchant_request_id: Optional[str] = None
    customer_message: str = ""


@dataclass(frozen=True)
class PaymentReceipt:
    transaction_id: str
    correlation_id: Optional[str]
    receipt_reference: Optional[str]
    amount: Decimal
    phone: str
    subject_id: str


class PaymentInitiator(Protocol):
    async def initiate(
        self,
        amount: Any,
        phone: str,
        subject_id: str,
        transaction_id: str
    ) -> InitiationResult:
        ...


# ============================================================================
# Initiators
# ============================================================================

_ERROR_TYPES: Dict[str, Type[PaymentError]] = {
    "payment:validation": ValidationError,
    "gateway:auth": AuthError,
    "store:conflict": ConflictError,
    "store:not_found": AttemptNotFoundError,
    "payment:declined": PaymentDeclinedError,
}


def error_from_response(status_code: int, body: Any) -> PaymentError:
    """Rebuild a PaymentError from the API's error JSON."""
    if not isinstance(body, dict):
        body = {}

    error_code = body.get("error_code")
    message = body.get("error") or f"Payment request failed (HTTP {status_code})"
    details = body.get("details") or {}

    if error_code == "gateway:rejected":
        return GatewayError(details.get("code"), details.get("description") or message, details)

    error_type = _ERROR_TYPES.get(error_code)
    if error_type is not None:
        return error_type(message, details)

    if status_code == 422:
        # FastAPI request validation body: {"detail": [...]}
        return ValidationError("Invalid payment request", {"errors": body.get("detail")})

    return PaymentError(error_code or "payment:error", message, details)


class HttpPaymentInitiator:
    """Calls the backend's STK push endpoint as the given user."""

    def __init__(self, client: httpx.AsyncClient, requester_id: str):
        self._client = client
        self._requester_id = requester_id

    async def initiate(
        self,
        amount: Any,
        phone: str,
        subject_id: str,
        transaction_id: str
    ) -> InitiationResult:
        try:
            response = await self._client.post(
                STK_PUSH_PATH,
                json={
                    "amount": str(amount),
                    "phone": phone,
                    "subjectId": subject_id,
                    "transactionId": transaction_id,
                },
                headers={"X-User-Id": self._requester_id},
            )
        except httpx.HTTPError as e:
            raise PaymentError(
                "payment:unreachable",
                "Payment service unreachable",
                details={"error": str(e)}
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400 or not body.get("success"):
            raise error_from_response(response.status_code, body)

        return InitiationResult(
            transaction_id=body.get("transactionId") or transaction_id,
            correlation_id=body.get("correlationId"),
            merchant_request_id=body.get("merchantRequestId"),
            customer_message=body.get("customerMessage") or "",
        )


class LocalPaymentInitiator:
    """Calls PaymentService directly, for in-process clients and tests."""

    def __init__(self, service: PaymentService, requester_id: str):
        self._service = service
        self._requester_id = requester_id

    async def initiate(
        self,
        amount: Any,
        phone: str,
        subject_id: str,
        transaction_id: str
    ) -> InitiationResult:
        attempt = await self._service.initiate(
            requester_id=self._requester_id,
            amount=amount,
            phone=phone,
            subject_id=subject_id,
            attempt_id=transaction_id,
        )
        return InitiationResult(
            transaction_id=attempt.id,
            correlation_id=attempt.correlation_id,
            merchant_request_id=attempt.merchant_request_id,
        )


# ============================================================================
# Orchestrator
# ============================================================================

def _is_terminal(attempt: PaymentAttempt) -> bool:
    return attempt.state.is_terminal


class PaymentOrchestrator:
    """
    Runs one payment request at a time for a single payer.

    Args:
        initiator: How the STK push request reaches the backend
        payments: Store whose watch() delivers payment updates
        registrations: Store for registration confirmation (optional)
        timeout_seconds: How long to wait for the callback
        country_code: Dialing prefix for local phone validation
        registration_timeout_seconds: Default wait for registration approval
    """

    def __init__(
        self,
        initiator: PaymentInitiator,
        payments: PaymentStore,
        registrations: Optional[RegistrationStore] = None,
        timeout_seconds: float = 120.0,
        country_code: str = "254",
        registration_timeout_seconds: float = 10.0
    ):
        self._initiator = initiator
        self._payments = payments
        self._registrations = registrations
        self._timeout = timeout_seconds
        self._country_code = country_code
        self._registration_timeout = registration_timeout_seconds
        self._state = OrchestratorState.IDLE
        self._in_flight = False
        self.transaction_id: Optional[str] = None

    @property
    def state(self) -> OrchestratorState:
        return self._state

    def _transition(self, state: OrchestratorState) -> None:
        logger.debug(f"Orchestrator {self.transaction_id}: {self._state.value} -> {state.value}")
        self._state = state

    async def request_payment(self, amount: Any, phone: str, subject_id: str) -> PaymentReceipt:
        """
        Request a payment and wait for its outcome.

        Returns:
            PaymentReceipt with the M-Pesa receipt number

        Raises:
            ValidationError: phone rejected locally, before any network call
            AuthError / GatewayError: the push could not be sent
            PaymentDeclinedError: the payer cancelled or the payment failed
            PaymentTimeoutError: no outcome within the timeout window
            ConflictError: another request is already in flight
        """
        if self._in_flight:
            raise ConflictError(
                "A payment request is already in progress",
                details={"transaction_id": self.transaction_id}
            )

        msisdn = normalize_phone(phone, self._country_code)

        self._in_flight = True
        try:
            self.transaction_id = new_transaction_id()
            self._transition(OrchestratorState.INITIATING)

            try:
                initiated = await self._initiator.initiate(
                    amount=amount,
                    phone=msisdn,
                    subject_id=subject_id,
                    transaction_id=self.transaction_id,
                )
            except Exception:
                self._transition(OrchestratorState.RESOLVED_FAILURE)
                raise

            self.transaction_id = initiated.transaction_id
            key = initiated.correlation_id or initiated.transaction_id
            logger.info(f"Awaiting M-Pesa callback for {self.transaction_id} (checkout={key})")

            subscription = await self._payments.watch(key, _is_terminal)
            try:
                self._transition(OrchestratorState.AWAITING_CALLBACK)
                try:
                    attempt = await asyncio.wait_for(subscription.next(), timeout=self._timeout)
                except asyncio.TimeoutError:
                    self._transition(OrchestratorState.TIMED_OUT)
                    logger.warning(f"No payment outcome for {self.transaction_id} after {self._timeout}s")
                    raise PaymentTimeoutError(
                        "Payment confirmation timed out. Check your M-Pesa messages before retrying.",
                        details={"transaction_id": self.transaction_id, "timeout_seconds": self._timeout}
                    )
            finally:
                subscription.close()

            if attempt is None:
                # Subscription closed underneath us
                self._transition(OrchestratorState.RESOLVED_FAILURE)
                raise PaymentError(
                    "payment:error",
                    "Payment updates stopped before an outcome was received",
                    details={"transaction_id": self.transaction_id}
                )

            if attempt.state is PaymentState.COMPLETED:
                self._transition(OrchestratorState.RESOLVED_SUCCESS)
                logger.info(f"Payment {attempt.id} completed: receipt={attempt.receipt_reference}")
                return PaymentReceipt(
                    transaction_id=attempt.id,
                    correlation_id=attempt.correlation_id,
                    receipt_reference=attempt.receipt_reference,
                    amount=attempt.amount,
                    phone=attempt.phone,
                    subject_id=attempt.subject_id,
                )

            self._transition(OrchestratorState.RESOLVED_FAILURE)
            raise PaymentDeclinedError(
                attempt.failure_reason or "Payment failed",
                details={"transaction_id": attempt.id, "result_code": attempt.result_code}
            )
        finally:
            self._in_flight = False

    async def wait_for_registration_confirmation(
        self,
        user_id: str,
        tournament_id: str,
        timeout: Optional[float] = None
    ) -> RegistrationRecord:
        """
        Wait until the user's registration is approved.

        Raises:
            PaymentTimeoutError: not approved within the window
        """
        if self._registrations is None:
            raise ValueError("No registration store configured")

        window = self._registration_timeout if timeout is None else timeout
        subscription = await self._registrations.watch(
            user_id,
            tournament_id,
            lambda record: record.status is RegistrationStatus.APPROVED,
        )
        try:
            record = await asyncio.wait_for(subscription.next(), timeout=window)
        except asyncio.TimeoutError:
            raise PaymentTimeoutError(
                "Registration confirmation timed out",
                details={"user_id": user_id, "tournament_id": tournament_id, "timeout_seconds": window}
            )
        finally:
            subscription.close()

        if record is None:
            raise PaymentTimeoutError(
                "Registration updates stopped before approval",
                details={"user_id": user_id, "tournament_id": tournament_id}
            )
        return record
