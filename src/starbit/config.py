"""Application configuration using pydantic-settings.

All lifecycle constants (trade expiry, deposit tolerance, withdrawal limits)
live here so they can be pinned per environment and in tests.
"""

from decimal import Decimal
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/starbit.db",
        description="Database connection URL",
    )

    # ======================
    # API
    # ======================
    api_host: str = Field(default="0.0.0.0", description="API server host")
    api_port: int = Field(default=8000, description="API server port")

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=True, description="Enable debug mode")

    # ======================
    # Auth
    # ======================
    jwt_secret: str = Field(default="change-me", description="Secret used to verify bearer tokens")
    jwt_algorithm: str = Field(default="HS256", description="Bearer token signing algorithm")
    admin_role: str = Field(default="admin", description="Role claim that grants admin access")

    # ======================
    # Deposits
    # ======================
    deposit_webhook_secret: str = Field(
        default="", description="HMAC secret for confirmation webhooks (empty = unsigned)"
    )
    deposit_amount_tolerance: Decimal = Field(
        default=Decimal("0.001"),
        description="Relative tolerance between expected and received amount (0.1%)",
    )

    # ======================
    # Withdrawals
    # ======================
    withdrawal_asset: str = Field(default="USD", description="Asset withdrawals are paid from")
    withdrawal_fee_percent: Decimal = Field(
        default=Decimal("0"), description="Withdrawal fee as a percentage of the gross amount"
    )
    withdrawal_min_amount: Decimal = Field(default=Decimal("20"), description="Minimum withdrawal")
    withdrawal_max_amount: Decimal = Field(default=Decimal("100000"), description="Maximum withdrawal")
    withdrawal_processing_time: str = Field(
        default="1-3 business days", description="Processing time shown with fee quotes"
    )

    # ======================
    # P2P
    # ======================
    p2p_trade_expiry_minutes: int = Field(
        default=30, description="Minutes a pending trade waits for payment"
    )
    p2p_expiry_sweep_interval: int = Field(
        default=60, description="Seconds between expired-trade sweeps (0 = disabled)"
    )
    p2p_crypto_decimals: int = Field(
        default=8, description="Decimal places kept for escrowed crypto amounts"
    )
    chat_poll_interval_seconds: int = Field(
        default=15, description="Polling interval advertised to trade chat clients"
    )
    chat_message_max_length: int = Field(default=2000, description="Maximum chat message length")

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment.lower() == "production"

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "api_host": self.api_host,
            "api_port": self.api_port,
            "database_url": self._redact_url(self.database_url),
            "jwt_secret": "***" if self.jwt_secret else "(not set)",
            "deposits": {
                "amount_tolerance": str(self.deposit_amount_tolerance),
                "webhook_signed": bool(self.deposit_webhook_secret),
            },
            "withdrawals": {
                "asset": self.withdrawal_asset,
                "fee_percent": str(self.withdrawal_fee_percent),
                "min_amount": str(self.withdrawal_min_amount),
                "max_amount": str(self.withdrawal_max_amount),
            },
            "p2p": {
                "trade_expiry_minutes": self.p2p_trade_expiry_minutes,
                "sweep_interval": self.p2p_expiry_sweep_interval,
                "poll_interval": self.chat_poll_interval_seconds,
            },
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact sensitive parts of database URL."""
        if "://" in url and "@" in url:
            proto, rest = url.split("://", 1)
            if "@" in rest:
                creds, host = rest.rsplit("@", 1)
                if ":" in creds:
                    user, _ = creds.split(":", 1)
                    return f"{proto}://{user}:***@{host}"
        return url


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
