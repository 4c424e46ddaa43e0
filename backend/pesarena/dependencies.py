"""
Service Wiring

Components are built once per application and passed explicitly; routers
reach them through FastAPI dependencies instead of module-level globals.
"""
import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from .config import Settings
from .services.callback_service import CallbackReceiver
from .services.change_feed import ChangeFeed
from .services.mpesa_client import MpesaClient
from .services.payment_service import PaymentService
from .services.payment_store import PaymentStore
from .services.payout_service import PayoutService
from .services.reconciliation import ReconciliationService
from .services.registration_store import RegistrationStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    http_client: httpx.AsyncClient
    mpesa: MpesaClient
    payments: PaymentStore
    registrations: RegistrationStore
    payment_service: PaymentService
    callbacks: CallbackReceiver
    payouts: PayoutService
    reconciliation: ReconciliationService


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker,
    http_client: httpx.AsyncClient,
    mpesa: Optional[MpesaClient] = None
) -> Services:
    """Assemble every component from its collaborators."""
    mpesa = mpesa or MpesaClient(http_client, settings)
    payments = PaymentStore(session_factory, ChangeFeed("payments"))
    registrations = RegistrationStore(session_factory, ChangeFeed("registrations"))

    return Services(
        settings=settings,
        http_client=http_client,
        mpesa=mpesa,
        payments=payments,
        registrations=registrations,
        payment_service=PaymentService(mpesa, payments, settings),
        callbacks=CallbackReceiver(payments, registrations),
        payouts=PayoutService(mpesa, session_factory, settings),
        reconciliation=ReconciliationService(
            payments,
            registrations,
            stale_after_minutes=settings.stale_payment_minutes,
            lookback_hours=settings.reconciliation_lookback_hours,
        ),
    )


# ============================================================================
# FastAPI dependencies
# ============================================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_requester_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Caller identity; the site's auth layer sets X-User-Id."""
    if not x_user_id:
        raise HTTPException(
            status_code=401,
            detail={
                "error_code": "auth:missing_user",
                "message": "X-User-Id header is required"
            }
        )
    return x_user_id


def require_admin(request: Request, x_admin_secret: Optional[str] = Header(default=None)) -> None:
    """Admin routes need X-Admin-Secret; an unset secret locks them entirely."""
    expected = get_services(request).settings.admin_secret
    if not expected or not x_admin_secret or not hmac.compare_digest(
        x_admin_secret.encode("utf-8"), expected.encode("utf-8")
    ):
        logger.warning(f"Rejected admin request to {request.url.path}")
        raise HTTPException(
            status_code=401,
            detail={
                "error_code": "auth:unauthorized",
                "message": "Unauthorized"
            }
        )
