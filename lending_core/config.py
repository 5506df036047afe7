"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import List, Optional


class LendingConfig(BaseSettings):
    """Lending core configuration"""

    # Database configuration
    database_url: str = "sqlite:///lending_core.db"

    # Payment processor configuration
    stripe_secret_key: str = ""
    stripe_verification_secret_key: str = ""  # Separate account for verification billing
    verification_price_id: str = ""  # Metered price for pay-per-use verification
    verification_meter_event_name: str = "verification_completed"

    # Loan terms
    currency: str = "USD"
    enable_interest_calculations: bool = False  # Off: schedules amortize principal only
    default_annual_rate: str = "30"  # Percent, used when a loan has no rate
    allowed_term_weeks: List[int] = [4, 6, 8, 12, 16]
    convenience_fee: str = "3.00"  # Added as a second line to every scheduled invoice
    final_invoice_days_until_due: int = 30

    # Delinquency
    derogatory_review_after_days: int = 30  # Days overdue before pending_derogatory_review
    derogatory_review_window_days: int = 7  # Days in review before automatic derogatory
    late_fee_amount: str = "15.00"  # Added once to a scheduled invoice past the grace period
    late_fee_grace_days: int = 5

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090

    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    class Config:
        env_prefix = "LENDING_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LendingConfig()


def get_config() -> LendingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LendingConfig:
    """Reload configuration from environment"""
    global config
    config = LendingConfig()
    return config
