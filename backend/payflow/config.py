"""
Payflow Configuration Module

Loads environment variables for the payment orchestration service.
"""
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings
from typing import Dict, Literal, Optional


class RateLimitRule(BaseModel):
    """Fixed-window throttle for one route."""
    limit: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


DEMO_PAYOUT_IBAN = "GB33BUKB20201555555555"


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        "payments:create": RateLimitRule(limit=10, window_seconds=3600),
        "payments:read": RateLimitRule(limit=100, window_seconds=60),
        "refunds:create": RateLimitRule(limit=10, window_seconds=3600),
        "refunds:read": RateLimitRule(limit=100, window_seconds=60),
    }


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - Provider credentials and webhook secrets are environment-based only
    - Demo mode swaps every provider for the in-process sandbox gateway
    - Rate limits are per route key, overridable with a JSON RATE_LIMITS value
- Without PAYOUT_IBAN, demo mode pays bank transfers into a sandbox account
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    default_currency: str = "USD"

    # Database
    database_url: str = "sqlite+aiosqlite:///./payflow.db"

    # Auth (HS256 bearer tokens)
    jwt_secret: str = "jwt_secret_demo_only_change_me"
    jwt_algorithm: str = "HS256"

    # Gateway calls
    gateway_timeout_seconds: float = 30.0
    gateway_max_attempts: int = Field(default=3, ge=1, le=5)
    gateway_backoff_seconds: float = 1.0
    gateway_backoff_max_seconds: float = 5.0

    # Wise (bank transfers)
    wise_api_url: str = "https://api.sandbox.transferwise.tech"
    wise_api_key: Optional[str] = None
    wise_profile_id: Optional[str] = None
    wise_webhook_secret: str = "wise_webhook_secret_demo_only_change_me"

    # Visa Direct (card push payments)
    visa_api_url: str = "https://sandbox.api.visa.com"
    visa_api_key: Optional[str] = None
    visa_shared_secret: Optional[str] = None
    visa_user_id: Optional[str] = None
    visa_password: Optional[str] = None
    visa_merchant_id: Optional[str] = None
    visa_merchant_name: str = "Payflow Merchant"
    visa_merchant_category_code: str = "4214"
    visa_acquiring_bin: Optional[str] = None
    visa_client_cert_path: Optional[str] = None
    visa_client_key_path: Optional[str] = None
    visa_webhook_secret: str = "visa_webhook_secret_demo_only_change_me"

    # Apple Pay (wallet tokens)
    apple_pay_merchant_id: Optional[str] = None
    apple_pay_domain: Optional[str] = None
    apple_pay_display_name: str = "Payflow Merchant"
    apple_pay_processor_url: Optional[str] = None
    apple_pay_merchant_cert_path: Optional[str] = None
    apple_pay_merchant_key_path: Optional[str] = None
    apple_pay_webhook_secret: str = "apple_pay_webhook_secret_demo_only_change_me"

    # Merchant payout account used by bank transfers that name no recipient
    payout_account_holder_name: str = "Payflow Merchant"
    payout_iban: Optional[str] = None
    payout_currency: Optional[str] = None

    # Rate limiting
    rate_limit_backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    rate_limits: Dict[str, RateLimitRule] = Field(default_factory=_default_rate_limits)

    # Transactional email (Postmark)
    email_enabled: bool = False
    postmark_api_url: str = "https://api.postmarkapp.com"
    postmark_api_token: Optional[str] = None
    email_from: str = "payments@example.com"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False

    def rate_limit_for(self, route_key: str) -> Optional[RateLimitRule]:
        """Return the configured rule for a route, or None when unthrottled."""
        return self.rate_limits.get(route_key)
