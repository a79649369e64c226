"""Application configuration management using Pydantic Settings."""

from typing import List, Optional
from decimal import Decimal
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str

    # API
    API_V1_PREFIX: str = "/api"

    # CORS
    CORS_ORIGINS: List[str] = ['http://localhost:3000']

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Money
    CURRENCY: str = "TRY"
    CURRENCY_MINOR_UNITS: int = 2  # Kuruş / cents

    # Offer negotiation
    OFFER_EXPIRY_HOURS: int = 24
    OFFER_MIN_FRACTION: Decimal = Decimal("0.5")  # Minimum offer = 50% of listing price
    OFFER_MAX_COUNTER_ROUNDS: int = 5

    # Trade deadlines
    TRADE_RESPONSE_DEADLINE_HOURS: int = 72
    TRADE_PAYMENT_DEADLINE_HOURS: int = 48
    TRADE_SHIPPING_DEADLINE_DAYS: int = 7
    TRADE_CONFIRMATION_DEADLINE_DAYS: int = 5

    # Commission on trade cash legs (fraction, 0.05 = 5%)
    TRADE_COMMISSION_RATE: Decimal = Decimal("0.05")

    # External collaborators
    CATALOG_SERVICE_URL: str = "http://localhost:8001"
    PAYMENT_SERVICE_URL: str = "http://localhost:8002"
    ORDER_SERVICE_URL: str = "http://localhost:8003"
    NOTIFICATION_SERVICE_URL: Optional[str] = None  # Event bus only when unset
    COLLABORATOR_TIMEOUT_SECONDS: float = 10.0

    # Deadline scheduler
    SCHEDULER_ENABLED: bool = False  # Run in-process; production uses scheduler/run.py
    SCHEDULER_INTERVAL_SECONDS: int = 60
    SCHEDULER_BATCH_SIZE: int = 100

    # Dispute arbitration
    ADMIN_API_KEY_HASH: str = ""  # SHA-256 hex of the arbitration key

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v) -> List[str]:
        """Parse CORS_ORIGINS from JSON string to list."""
        if isinstance(v, str):
            return json.loads(v)
        return v

    @field_validator("OFFER_MIN_FRACTION", "TRADE_COMMISSION_RATE", mode="before")
    @classmethod
    def parse_decimal(cls, v) -> Decimal:
        """Parse string to Decimal for precise arithmetic."""
        if isinstance(v, str):
            return Decimal(v)
        return v


# Global settings instance
settings = Settings()
