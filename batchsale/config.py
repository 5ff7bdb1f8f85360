"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 10
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Batch Sale Settlement API"
    api_version: str = "0.1.0"
    api_description: str = "Game-gated Lightning purchase and RGB token settlement"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability
    metrics_enabled: bool = True
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "batchsale-api"

    # Payment Processor - "btcpay" or "mock"
    payment_processor: str = "btcpay"
    btcpay_url: str = "https://btcpay0.voltageapp.io"
    btcpay_api_key: str = ""
    btcpay_store_id: str = ""
    btcpay_webhook_secret: str = ""
    processor_request_timeout_seconds: float = 10.0

    # RGB Transfer Engine - "proxy" or "mock"
    transfer_engine: str = "proxy"
    rgb_proxy_endpoint: str = "https://proxy.iriswallet.com/0.2/json-rpc"
    rgb_contract_id: str = ""
    rgb_network: str = "mainnet"
    transfer_request_timeout_seconds: float = 30.0
    consignment_retry_delays_seconds: tuple[float, ...] = (5.0, 15.0, 60.0)

    # Sale economics
    price_per_batch_sats: int = 2000
    tokens_per_batch: int = 700
    total_sale_batches: int = 27_900
    invoice_expiry_minutes: int = 15
    invoice_retention_days: int = 30
    game_result_validity_minutes: int = 60

    # Polling policy (shared by payment monitor and stats poller)
    poll_base_interval_ms: int = 15_000
    poll_max_backoff_ms: int = 60_000
    poll_max_attempts: int = 6
    poll_pause_ms: int = 300_000
    poll_request_timeout_seconds: float = 10.0
    stats_cache_max_age_seconds: float = 300.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.payment_processor not in ("btcpay", "mock"):
            errors.append(f"PAYMENT_PROCESSOR must be 'btcpay' or 'mock', got: {self.payment_processor}")
        elif self.payment_processor == "btcpay":
            if not self.btcpay_api_key:
                errors.append("BTCPAY_API_KEY is required when PAYMENT_PROCESSOR=btcpay")
            if not self.btcpay_store_id:
                errors.append("BTCPAY_STORE_ID is required when PAYMENT_PROCESSOR=btcpay")
            if not self.btcpay_webhook_secret:
                errors.append("BTCPAY_WEBHOOK_SECRET is required when PAYMENT_PROCESSOR=btcpay")

        if self.transfer_engine not in ("proxy", "mock"):
            errors.append(f"TRANSFER_ENGINE must be 'proxy' or 'mock', got: {self.transfer_engine}")
        elif self.transfer_engine == "proxy" and not self.rgb_contract_id:
            errors.append("RGB_CONTRACT_ID is required when TRANSFER_ENGINE=proxy")

        if self.price_per_batch_sats <= 0 or self.tokens_per_batch <= 0:
            errors.append("PRICE_PER_BATCH_SATS and TOKENS_PER_BATCH must be positive")

        if self.game_result_validity_minutes <= 0:
            errors.append("GAME_RESULT_VALIDITY_MINUTES must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def total_supply(self) -> int:
        """Tokens allocated to the sale."""
        return self.total_sale_batches * self.tokens_per_batch

    @property
    def async_database_url(self) -> str:
        """Database URL with an async driver selected."""
        url = self.database_url
        if url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("postgres://"):
            return url.replace("postgres://", "postgresql+asyncpg://", 1)
        return url


# Global settings instance - validates at import time
settings = Settings()
