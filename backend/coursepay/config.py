"""
CoursePay Configuration Module

Loads environment variables for the enrollment reconciliation service.
"""
from pydantic_settings import BaseSettings
from typing import Literal


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Notes:
    - Gateway and callback secrets are environment-based
    - Demo mode swaps Stripe for the in-process fake gateway
    """

    # Demo Configuration
    demo_mode: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Stripe (card rails)
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = "whsec_demo_only_change_me"
    webhook_tolerance_seconds: int = 300

    # Mobile banking callback secrets (HMAC-SHA256)
    bkash_callback_secret: str = "bkash_secret_demo_only_change_me"
    nagad_callback_secret: str = "nagad_secret_demo_only_change_me"
    sslcommerz_callback_secret: str = "sslcommerz_secret_demo_only_change_me"
    checkout_base_url: str = "http://localhost:5173"

    # Manual / bank transfer verification
    auto_verify_manual_payments: bool = False

    # Reconciliation
    max_cas_attempts: int = 5

    # Stale payment sweeper
    sweeper_enabled: bool = True
    pending_payment_ttl_minutes: int = 60
    sweep_interval_minutes: int = 5

    # Database
    database_path: str = "./coursepay.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
