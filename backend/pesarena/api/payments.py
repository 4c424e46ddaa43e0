"""
Payments API Endpoints

STK push initiation, payment lookup and a live SSE stream of payment
updates for the payer's browser.
"""
import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from ..dependencies import Services, get_requester_id, get_services
from ..exceptions import AttemptNotFoundError
from ..models.payments import PaymentAttempt, StkPushRequest

logger = logging.getLogger(__name__)

router = APIRouter()

CUSTOMER_MESSAGE = "Check your phone and enter your M-Pesa PIN to complete the payment"
KEEPALIVE_SECONDS = 15.0


async def _load_attempt(services: Services, attempt_id: str, requester_id: str) -> PaymentAttempt:
    attempt = (
        await services.payments.get(attempt_id)
        or await services.payments.get_by_correlation(attempt_id)
    )
    # Another user's payment is reported as missing
    if attempt is None or attempt.requester_id != requester_id:
        raise AttemptNotFoundError(
            f"Payment not found: {attempt_id}",
            details={"id": attempt_id}
        )
    return attempt


@router.post("/stk-push")
async def stk_push_endpoint(
    body: StkPushRequest,
    requester_id: str = Depends(get_requester_id),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Send an STK push prompt for a tournament entry fee.

    Request Body:
        {"amount": 500, "phone": "0712345678", "subjectId": "T1", "transactionId": "TXN_..."}

    Returns:
        {
            "success": true,
            "correlationId": "ws_CO_...",
            "transactionId": "TXN_...",
            "merchantRequestId": "...",
            "customerMessage": "...",
            "state": "pending"
        }

    Errors are returned as {"error", "error_code", "details"}.
    """
    logger.info(f"STK push requested: requester={requester_id}, subject={body.subject_id}")

    attempt = await services.payment_service.initiate(
        requester_id=requester_id,
        amount=body.amount,
        phone=body.phone,
        subject_id=body.subject_id,
        attempt_id=body.transaction_id,
    )

    return {
        "success": True,
        "correlationId": attempt.correlation_id,
        "transactionId": attempt.id,
        "merchantRequestId": attempt.merchant_request_id,
        "customerMessage": CUSTOMER_MESSAGE,
        "state": attempt.state.value,
    }


@router.get("/{attempt_id}")
async def get_payment_endpoint(
    attempt_id: str,
    requester_id: str = Depends(get_requester_id),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Get a payment by transaction id or CheckoutRequestID.

    Example:
        GET /api/payments/TXN_5F2C7A9B1D3E4F60
    """
    attempt = await _load_attempt(services, attempt_id, requester_id)
    return attempt.to_public_dict()


def format_sse_event(event_type: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
    """Format one Server-Sent Event."""
    lines = [f"event: {event_type}"]
    if event_id:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(data)}")
    lines.append("")
    lines.append("")
    return "\n".join(lines)


@router.get("/{attempt_id}/events")
async def payment_events_endpoint(
    attempt_id: str,
    request: Request,
    requester_id: str = Depends(get_requester_id),
    services: Services = Depends(get_services)
):
    """
    Stream updates of one payment as Server-Sent Events.

    Emits `payment_update` with the payment document on every change (the
    current state first) and ends after the first terminal state.
    """
    attempt = await _load_attempt(services, attempt_id, requester_id)

    async def event_generator() -> AsyncIterator[str]:
        subscription = await services.payments.watch(attempt.id)
        sequence = 0
        try:
            while True:
                try:
                    update = await asyncio.wait_for(subscription.next(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    if await request.is_disconnected():
                        logger.info(f"Payment stream client disconnected: {attempt.id}")
                        break
                    yield ": keepalive\n\n"
                    continue

                if update is None:
                    break

                sequence += 1
                yield format_sse_event("payment_update", update.to_public_dict(), f"{attempt.id}:{sequence}")
                if update.state.is_terminal:
                    break
        except asyncio.CancelledError:
            logger.info(f"Payment stream cancelled: {attempt.id}")
            raise
        finally:
            subscription.close()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        }
    )
