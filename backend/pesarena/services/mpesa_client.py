"""
M-Pesa Daraja Gateway Client

Talks to the Daraja API: OAuth token acquisition, Lipa na M-Pesa Online
(STK push) and B2C payment requests. The httpx client is injected so the
application shares one connection pool and tests can swap the transport.

Field names in request bodies are the provider's and must not be renamed.
"""
import base64
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Any, Dict, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import Settings
from ..exceptions import AuthError, GatewayError, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
B2C_PATH = "/mpesa/b2c/v1/paymentrequest"

TRANSACTION_TYPE = "CustomerPayBillOnline"
B2C_COMMAND_ID = "BusinessPayment"

# Provider limits on free-text fields
ACCOUNT_REFERENCE_MAX = 12
TRANSACTION_DESC_MAX = 13

_NON_DIGITS = re.compile(r"\D")


# ============================================================================
# Request helpers
# ============================================================================

def normalize_phone(phone: str, country_code: str = "254") -> str:
    """
    Normalize a Kenyan MSISDN to the canonical 254XXXXXXXXX form.

    Accepts "0712 345 678", "+254712345678", "254712345678" and the bare
    subscriber number "712345678".

    Raises:
        ValidationError: number does not normalize to the canonical form
    """
    digits = _NON_DIGITS.sub("", phone or "")

    if digits.startswith("0"):
        digits = country_code + digits[1:]
    elif len(digits) == 9:
        digits = country_code + digits

    if not re.fullmatch(rf"{country_code}\d{{9}}", digits):
        raise ValidationError(
            "Invalid phone number",
            details={"phone": phone, "expected": f"{country_code}XXXXXXXXX"}
        )
    return digits


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """Daraja timestamp, YYYYMMDDHHmmss."""
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    """STK push password: base64(shortcode + passkey + timestamp)."""
    raw = f"{short_code}{passkey}{timestamp}"
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")


def basic_auth_header(consumer_key: str, consumer_secret: str) -> str:
    credentials = f"{consumer_key}:{consumer_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


def whole_shillings(amount: Any) -> int:
    """
    Floor an amount to whole shillings, the only unit Daraja accepts.

    Raises:
        ValidationError: amount is not a number or floors below 1
    """
    try:
        value = Decimal(str(amount)).to_integral_value(rounding=ROUND_FLOOR)
    except ArithmeticError as e:
        raise ValidationError("Invalid amount", details={"amount": str(amount)}) from e

    if not value.is_finite():
        raise ValidationError("Invalid amount", details={"amount": str(amount)})

    if value < 1:
        raise ValidationError(
            "Amount must be at least 1 KES",
            details={"amount": str(amount)}
        )
    return int(value)


# ============================================================================
# Responses
# ============================================================================

@dataclass(frozen=True)
class StkPushResponse:
    correlation_id: str
    merchant_request_id: Optional[str]
    response_description: str
    customer_message: str


@dataclass(frozen=True)
class B2CResponse:
    conversation_id: str
    originator_conversation_id: Optional[str]
    response_description: str


# ============================================================================
# Client
# ============================================================================

class MpesaClient:
    """
    Daraja API client.

    Token acquisition retries transport failures with exponential backoff.
    Push and payout requests are never retried here: each one may prompt a
    phone or move money.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        settings: Settings,
        retry_wait=None
    ):
        """
        Args:
            http_client: Shared async HTTP client
            settings: Application settings (credentials, environment, timeouts)
            retry_wait: tenacity wait strategy for token retries
        """
        self._http = http_client
        self._settings = settings
        self._base_url = settings.mpesa_base_url
        self._timeout = settings.mpesa_http_timeout_seconds
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, min=0.5, max=4)

        logger.info(f"M-Pesa client initialized (environment: {settings.mpesa_environment})")

    async def acquire_token(self) -> str:
        """
        Fetch an OAuth access token.

        Returns:
            Bearer token string

        Raises:
            AuthError: credentials missing or rejected, or gateway unreachable
        """
        if not self._settings.mpesa_consumer_key or not self._settings.mpesa_consumer_secret:
            raise AuthError("M-Pesa consumer credentials are not configured")

        headers = {
            "Authorization": basic_auth_header(
                self._settings.mpesa_consumer_key,
                self._settings.mpesa_consumer_secret
            )
        }

        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(httpx.TransportError),
                stop=stop_after_attempt(max(1, self._settings.mpesa_token_retry_attempts)),
                wait=self._retry_wait,
                reraise=True,
            ):
                with attempt:
                    response = await self._http.get(
                        f"{self._base_url}{TOKEN_PATH}",
                        params={"grant_type": "client_credentials"},
                        headers=headers,
                        timeout=self._timeout,
                    )
        except httpx.TransportError as e:
            logger.error(f"M-Pesa token request failed: {type(e).__name__}: {e}")
            raise AuthError("M-Pesa gateway unreachable", details={"error": str(e)}) from e

        if response.status_code >= 400:
            logger.error(f"M-Pesa token request rejected: HTTP {response.status_code}")
            raise AuthError(
                "M-Pesa rejected the consumer credentials",
                details={"status": response.status_code}
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        token = data.get("access_token") if isinstance(data, dict) else None

        if not token:
            logger.error("M-Pesa token response missing access_token")
            raise AuthError("Malformed M-Pesa token response", details={"status": response.status_code})

        logger.debug("M-Pesa access token acquired")
        return token

    async def initiate_push(
        self,
        amount: Any,
        phone: str,
        subject_id: str,
        callback_url: str,
        token: str
    ) -> StkPushResponse:
        """
        Send an STK push prompt to the payer's phone.

        Args:
            amount: Amount in KES, floored to whole shillings
            phone: Payer MSISDN (normalized here)
            subject_id: Tournament id, used as account reference
            callback_url: Where the provider posts the result
            token: Access token from acquire_token()

        Returns:
            StkPushResponse carrying the CheckoutRequestID as correlation_id

        Raises:
            ValidationError: bad amount or phone
            GatewayError: provider rejected the request
        """
        msisdn = normalize_phone(phone, self._settings.mpesa_country_code)
        whole_amount = whole_shillings(amount)
        timestamp = generate_timestamp()
        short_code = self._settings.mpesa_shortcode

        body = {
            "BusinessShortCode": short_code,
            "Password": generate_password(short_code, self._settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": whole_amount,
            "PartyA": msisdn,
            "PartyB": short_code,
            "PhoneNumber": msisdn,
            "CallBackURL": callback_url,
            "AccountReference": str(subject_id)[:ACCOUNT_REFERENCE_MAX],
            "TransactionDesc": f"Entry {subject_id}"[:TRANSACTION_DESC_MAX],
        }

        logger.info(f"Initiating STK push: subject={subject_id}, amount={whole_amount}")
        data = await self._post(STK_PUSH_PATH, body, token)

        response_code = str(data.get("ResponseCode", ""))
        if response_code != "0":
            raise GatewayError(
                response_code or None,
                data.get("ResponseDescription") or data.get("errorMessage") or "STK push rejected",
                details={"provider": data}
            )

        correlation_id = data.get("CheckoutRequestID")
        if not correlation_id:
            raise GatewayError(None, "STK push response missing CheckoutRequestID", details={"provider": data})

        logger.info(f"STK push accepted: checkout_request_id={correlation_id}")
        return StkPushResponse(
            correlation_id=correlation_id,
            merchant_request_id=data.get("MerchantRequestID"),
            response_description=data.get("ResponseDescription", ""),
            customer_message=data.get("CustomerMessage", ""),
        )

    async def initiate_b2c(
        self,
        token: str,
        amount: Any,
        phone: str,
        remarks: str,
        occasion: str,
        result_url: str,
        timeout_url: str
    ) -> B2CResponse:
        """
        Send money from the business shortcode to a customer (prize payout).

        Raises:
            ValidationError: bad amount or phone
            GatewayError: provider rejected the request
        """
        msisdn = normalize_phone(phone, self._settings.mpesa_country_code)
        whole_amount = whole_shillings(amount)

        body = {
            "InitiatorName": self._settings.mpesa_b2c_initiator,
            "SecurityCredential": self._settings.mpesa_b2c_security_credential,
            "CommandID": B2C_COMMAND_ID,
            "Amount": whole_amount,
            "PartyA": self._settings.mpesa_shortcode,
            "PartyB": msisdn,
            "Remarks": remarks,
            "QueueTimeOutURL": timeout_url,
            "ResultURL": result_url,
            "Occasion": occasion,
        }

        logger.info(f"Initiating B2C payment: amount={whole_amount}, occasion={occasion}")
        data = await self._post(B2C_PATH, body, token)

        response_code = str(data.get("ResponseCode", ""))
        if response_code != "0" or not data.get("ConversationID"):
            raise GatewayError(
                response_code or None,
                data.get("ResponseDescription") or data.get("errorMessage") or "B2C request rejected",
                details={"provider": data}
            )

        return B2CResponse(
            conversation_id=data["ConversationID"],
            originator_conversation_id=data.get("OriginatorConversationID"),
            response_description=data.get("ResponseDescription", ""),
        )

    async def _post(self, path: str, body: Dict[str, Any], token: str) -> Dict[str, Any]:
        """POST a JSON body with bearer auth and map failures to GatewayError."""
        try:
            response = await self._http.post(
                f"{self._base_url}{path}",
                json=body,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            logger.error(f"M-Pesa request to {path} failed: {type(e).__name__}: {e}")
            raise GatewayError(None, "M-Pesa gateway unreachable", details={"error": str(e)}) from e

        try:
            data = response.json()
        except ValueError:
            data = {"raw": response.text}

        if not isinstance(data, dict):
            data = {"raw": data}

        if response.status_code >= 400:
            # Daraja error body: {"requestId", "errorCode", "errorMessage"}
            code = data.get("errorCode") or str(response.status_code)
            description = data.get("errorMessage") or f"HTTP {response.status_code}"
            logger.warning(f"M-Pesa rejected {path}: code={code}, description={description}")
            raise GatewayError(code, description, details={"provider": data})

        return data
