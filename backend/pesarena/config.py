"""
PES Arena Payments Configuration Module

Loads environment variables for the payments backend: M-Pesa Daraja
credentials, callback URLs, flow timeouts and the local database.
"""
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - The sandbox/production split is chosen here and nowhere else
    - Secrets (consumer secret, passkey, admin secret) are environment-only
    - Callback URLs default to paths under public_base_url
    """

    # M-Pesa Daraja credentials
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_passkey: str = ""
    mpesa_shortcode: str = "174379"  # Daraja sandbox paybill
    mpesa_environment: Literal["sandbox", "production"] = "sandbox"
    mpesa_country_code: str = "254"
    mpesa_http_timeout_seconds: float = 30.0
    mpesa_token_retry_attempts: int = 3

    # Callback URLs
    public_base_url: str = "http://localhost:8000"
    mpesa_callback_url: str = ""  # Overrides the derived STK callback URL when set

    # B2C prize payouts
    mpesa_b2c_initiator: str = "testapi"
    mpesa_b2c_security_credential: str = "Safaricom999!*!"  # Sandbox placeholder
    payout_request_delay_seconds: float = 0.5
    admin_secret: str = ""

    # Payment flow
    payment_timeout_seconds: float = 120.0
    registration_confirmation_timeout_seconds: float = 10.0

    # Reconciliation sweep
    reconciliation_enabled: bool = True
    reconciliation_interval_minutes: int = 15
    stale_payment_minutes: int = 10
    reconciliation_lookback_hours: int = 24

    # Runtime
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    database_path: str = "./pesarena.db"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def mpesa_base_url(self) -> str:
        return MPESA_BASE_URLS[self.mpesa_environment]

    @property
    def stk_callback_url(self) -> str:
        """URL M-Pesa calls when an STK push attempt resolves."""
        if self.mpesa_callback_url:
            return self.mpesa_callback_url
        return f"{self.public_base_url.rstrip('/')}/api/mpesa/callback"

    @property
    def b2c_result_url(self) -> str:
        """URL M-Pesa calls with B2C payout results and queue timeouts."""
        return f"{self.public_base_url.rstrip('/')}/api/mpesa/payout-callback"


# Global settings instance
settings = Settings()
