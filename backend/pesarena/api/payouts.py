"""
Prize Payout API Endpoints

Admin-only. Requires the X-Admin-Secret header.
"""
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends

from ..dependencies import Services, get_services, require_admin
from ..models.payouts import PayoutRequest

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.post("/payouts")
async def create_payouts_endpoint(
    body: PayoutRequest,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Pay the winners of a tournament over M-Pesa B2C.

    Request Body:
        {
            "tournamentId": "T1",
            "totalPool": 10000,
            "winners": {"firstPlace": "0712...", "secondPlace": "0722...", "thirdPlace": "0733..."}
        }

    Returns:
        {"success": true, "message": "...", "summary": PayoutSummary}
    """
    logger.info(f"Payout requested for tournament {body.tournament_id}, pool={body.total_pool}")

    summary = await services.payouts.pay_out(body.tournament_id, body.total_pool, body.winners)
    return {
        "success": True,
        "message": "Payout process completed",
        "summary": summary.model_dump(by_alias=True, mode="json"),
    }


@router.get("/tournaments/{tournament_id}/payouts")
async def list_payouts_endpoint(
    tournament_id: str,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    payouts = await services.payouts.list_for_tournament(tournament_id)
    return {
        "tournamentId": tournament_id,
        "payouts": [p.model_dump(by_alias=True, mode="json") for p in payouts],
        "count": len(payouts),
    }
