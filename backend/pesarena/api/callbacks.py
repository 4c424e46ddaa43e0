"""
M-Pesa Callback Endpoints

Result receivers for STK push and B2C payouts. Both acknowledge every
delivery with {"ResultCode": 0, "ResultDesc": "Success"} before any
processing, so a failure on our side never triggers provider retries.
Processing runs as a background task after the response.
"""
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from ..dependencies import Services, get_services
from ..exceptions import ReconciliationGap, ValidationError
from ..models.callbacks import parse_b2c_result
from ..services.callback_service import CallbackReceiver
from ..services.payout_service import PayoutService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        logger.error(f"Callback body on {request.url.path} is not JSON: {e}")
        return None


@router.post("/callback")
async def stk_callback_endpoint(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services)
) -> JSONResponse:
    """
    STK push result receiver.

    Request Body:
        {"Body": {"stkCallback": {"MerchantRequestID", "CheckoutRequestID",
                  "ResultCode", "ResultDesc", "CallbackMetadata": {"Item": [...]}}}}
    """
    payload = await _read_json(request)
    if payload is not None:
        background_tasks.add_task(services.callbacks.process, payload)
    return JSONResponse(status_code=200, content=CallbackReceiver.acknowledgement())


async def _apply_payout_result(payouts: PayoutService, payload: Any) -> None:
    try:
        result = parse_b2c_result(payload)
    except ValidationError as e:
        logger.error(f"Dropping malformed B2C result: {e}")
        return

    logger.info(
        f"B2C result received: conversation_id={result.conversation_id}, "
        f"result_code={result.result_code}"
    )
    try:
        await payouts.record_result(result)
    except Exception as e:
        gap = ReconciliationGap(
            "B2C result processing failed after acknowledgement",
            details={"conversation_id": result.conversation_id, "error": f"{type(e).__name__}: {e}"}
        )
        logger.error(f"{gap.error_code}: {gap.message} {gap.details}", exc_info=True)


@router.post("/payout-callback")
async def payout_callback_endpoint(
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services)
) -> JSONResponse:
    """
    B2C result and queue-timeout receiver.

    Request Body:
        {"Result": {"ResultCode", "ResultDesc", "ConversationID", "TransactionID",
                    "ResultParameters": {"ResultParameter": [{"Key", "Value"}, ...]}}}
    """
    payload = await _read_json(request)
    if payload is not None:
        background_tasks.add_task(_apply_payout_result, services.payouts, payload)
    return JSONResponse(status_code=200, content=CallbackReceiver.acknowledgement())
