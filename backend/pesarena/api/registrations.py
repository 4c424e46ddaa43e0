"""
Tournament Registration API Endpoints

Players register for a tournament, then pay the entry fee; the payment
callback approves the registration. Admins can approve (only once paid) or
reject registrations manually.
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import Services, get_requester_id, get_services, require_admin
from ..exceptions import AttemptNotFoundError
from ..models.registrations import RegistrationCreateRequest, RegistrationStatus

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/tournaments/{tournament_id}/registrations", status_code=201)
async def create_registration_endpoint(
    tournament_id: str,
    body: Optional[RegistrationCreateRequest] = None,
    requester_id: str = Depends(get_requester_id),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    Register the caller for a tournament.

    Request Body (optional):
        {"tournamentName": "PES 2026 Freshers Cup", "gamerTag": "kamau_fc"}
    """
    body = body or RegistrationCreateRequest()
    record = await services.registrations.create(
        user_id=requester_id,
        tournament_id=tournament_id,
        tournament_name=body.tournament_name,
        gamer_tag=body.gamer_tag,
    )
    return record.to_public_dict()


@router.get("/tournaments/{tournament_id}/registrations")
async def list_registrations_endpoint(
    tournament_id: str,
    status: Optional[RegistrationStatus] = Query(None, description="Filter by status"),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """
    List registrations for a tournament.

    Example:
        GET /api/tournaments/T1/registrations?status=approved
    """
    records = await services.registrations.list_for_tournament(tournament_id, status)
    return {
        "tournamentId": tournament_id,
        "registrations": [r.to_public_dict() for r in records],
        "count": len(records),
    }


@router.get("/tournaments/{tournament_id}/registrations/me")
async def my_registration_endpoint(
    tournament_id: str,
    requester_id: str = Depends(get_requester_id),
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    record = await services.registrations.get(requester_id, tournament_id)
    if record is None:
        raise AttemptNotFoundError(
            "Not registered for this tournament",
            details={"tournament_id": tournament_id}
        )
    return record.to_public_dict()


@router.post("/registrations/{registration_id}/approve", dependencies=[Depends(require_admin)])
async def approve_registration_endpoint(
    registration_id: str,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    """Approve a paid registration. Unpaid registrations are refused with 400."""
    record = await services.registrations.approve(registration_id)
    return record.to_public_dict()


@router.post("/registrations/{registration_id}/reject", dependencies=[Depends(require_admin)])
async def reject_registration_endpoint(
    registration_id: str,
    services: Services = Depends(get_services)
) -> Dict[str, Any]:
    record = await services.registrations.reject(registration_id)
    return record.to_public_dict()
