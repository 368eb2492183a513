"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # CORS: comma-separated (e.g. http://localhost:5173,https://shop.example). Empty = default list in main.py.
    cors_origins: str = ""
    # Public base URL of the deployment; used to build the Paystack callback URL.
    base_url: str = ""

    # ===========================================
    # DATABASE (PostgreSQL / Supabase)
    # ===========================================
    database_url: str  # Required, no default
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # ===========================================
    # REDIS (circuit breaker state)
    # ===========================================
    redis_url: str  # Required, no default

    # ===========================================
    # PAYSTACK
    # ===========================================
    # Empty secret = webhooks and verify calls are rejected (fail closed).
    paystack_secret_key: str = ""
    paystack_base_url: str = "https://api.paystack.co"
    paystack_timeout_seconds: float = 10.0
    # Overrides {base_url}/paystack-return when set.
    paystack_callback_url: str = ""
    paystack_default_currency: str = "KES"

    # ===========================================
    # STRIPE
    # ===========================================
    # Empty secret key = Stripe Checkout initiation is disabled.
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_signature_tolerance: int = 300  # seconds
    # Override {base_url}/stripe-return and {base_url}/checkout when set.
    stripe_success_url: str = ""
    stripe_cancel_url: str = ""

    # ===========================================
    # CREDITS
    # ===========================================
    # Compare-and-swap attempts for the degraded credit path (atomic UPDATE unavailable).
    credit_cas_max_attempts: int = 3

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("paystack_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("credit_cas_max_attempts")
    @classmethod
    def validate_cas_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("credit_cas_max_attempts must be at least 1")
        return v

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def paystack_return_url(self) -> str:
        if self.paystack_callback_url:
            return self.paystack_callback_url
        return f"{self.base_url.rstrip('/')}/paystack-return"

    @property
    def stripe_return_url(self) -> str:
        if self.stripe_success_url:
            return self.stripe_success_url
        return f"{self.base_url.rstrip('/')}/stripe-return?session_id={{CHECKOUT_SESSION_ID}}"

    @property
    def stripe_checkout_cancel_url(self) -> str:
        return self.stripe_cancel_url or f"{self.base_url.rstrip('/')}/checkout"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # ignore unknown keys from .env


settings = Settings()
