"""Application configuration using pydantic-settings.

Covers both chain endpoints, the admin signing credentials for each side,
the fixed conversion parameters and the retry/timeout bounds of the relay.
"""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bridgerelay.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ======================
    # Environment
    # ======================
    environment: str = Field(default="development", description="Runtime environment")
    debug: bool = Field(default=False, description="Enable debug logging")
    log_level: str = Field(default="INFO", description="Log level when debug is off")

    # ======================
    # Database
    # ======================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/bridge_relay.db",
        description="Dedup store connection URL",
    )

    # ======================
    # Native chain (Solana)
    # ======================
    solana_rpc_url: str = Field(
        default="https://api.devnet.solana.com", description="Solana JSON-RPC URL"
    )
    solana_ws_url: str = Field(
        default="", description="Solana websocket URL (derived from RPC URL if empty)"
    )
    solana_program_id: str = Field(default="", description="Bridge program ID")
    solana_admin_keypair: Optional[str] = Field(
        default=None,
        description="Admin keypair: base58 secret key or path to a JSON keypair file",
    )
    solana_commitment: str = Field(default="confirmed", description="Commitment level")

    # ======================
    # Contract chain (EVM)
    # ======================
    evm_rpc_url: str = Field(default="", description="EVM JSON-RPC URL")
    evm_ws_url: str = Field(
        default="", description="EVM websocket URL (derived from RPC URL if empty)"
    )
    evm_contract_address: str = Field(default="", description="Bridge contract address")
    evm_admin_private_key: Optional[str] = Field(
        default=None, description="Owner private key of the bridge contract"
    )

    # ======================
    # Conversion
    # ======================
    native_decimals: int = Field(default=9, description="Lamports per SOL exponent")
    contract_decimals: int = Field(default=18, description="Bridge token decimals")
    exchange_rate: Decimal = Field(
        default=Decimal("1"),
        description="Nominal contract-token units per native unit",
    )
    rounding: str = Field(default="down", description="Rounding policy: down | half_even")

    # ======================
    # Bounds (smallest source units)
    # ======================
    native_min_amount: int = Field(default=1, description="Min lamports per lock")
    native_max_amount: int = Field(default=1_000_000_000, description="Max lamports per lock")
    contract_min_amount: int = Field(default=10**9, description="Min token wei per lock")
    contract_max_amount: int = Field(default=10**18, description="Max token wei per lock")

    # ======================
    # Dispatch
    # ======================
    confirmation_timeout: float = Field(
        default=120.0, description="Seconds to wait for a release to confirm"
    )
    confirmation_poll_interval: float = Field(
        default=2.0, description="Seconds between confirmation polls"
    )
    max_dispatch_attempts: int = Field(default=5, description="Attempts per release")
    retry_base_delay: float = Field(default=1.0, description="Initial retry delay (s)")
    retry_max_delay: float = Field(default=30.0, description="Retry delay cap (s)")

    # ======================
    # Watchers
    # ======================
    watcher_max_reconnect_attempts: int = Field(
        default=10, description="Consecutive reconnect failures before a direction stops"
    )
    reconnect_base_delay: float = Field(default=1.0, description="Initial reconnect delay (s)")
    reconnect_max_delay: float = Field(default=60.0, description="Reconnect delay cap (s)")
    reconnect_jitter: float = Field(default=1.0, description="Max random jitter (s)")
    event_queue_size: int = Field(default=1000, description="In-flight events per direction")
    session_cache_size: int = Field(
        default=10_000, description="Transaction ids remembered per subscription session"
    )

    # ======================
    # Operations
    # ======================
    status_interval: float = Field(default=60.0, description="Seconds between status reports")
    reconcile_interval: float = Field(
        default=300.0, description="Seconds between acknowledgement reconciliation passes"
    )
    metrics_port: Optional[int] = Field(
        default=None, description="Port for Prometheus metrics (disabled if unset)"
    )
    min_fee_balance_lamports: int = Field(
        default=1, description="Minimum admin balance required on Solana at startup"
    )
    min_fee_balance_wei: int = Field(
        default=1, description="Minimum admin balance required on EVM at startup"
    )

    @field_validator("rounding")
    @classmethod
    def _check_rounding(cls, value: str) -> str:
        value = value.lower()
        if value not in ("down", "half_even"):
            raise ValueError("rounding must be 'down' or 'half_even'")
        return value

    @field_validator("exchange_rate")
    @classmethod
    def _check_rate(cls, value: Decimal) -> Decimal:
        if value <= 0:
            raise ValueError("exchange_rate must be positive")
        return value

    @property
    def solana_websocket_url(self) -> str:
        """Websocket endpoint for Solana subscriptions."""
        return self.solana_ws_url or self._derive_ws_url(self.solana_rpc_url)

    @property
    def evm_websocket_url(self) -> str:
        """Websocket endpoint for EVM subscriptions."""
        return self.evm_ws_url or self._derive_ws_url(self.evm_rpc_url)

    def validate_for_relay(self) -> None:
        """Check that everything needed to run both directions is present.

        Raises:
            ConfigurationError: listing every missing setting
        """
        required = {
            "SOLANA_RPC_URL": self.solana_rpc_url,
            "SOLANA_PROGRAM_ID": self.solana_program_id,
            "SOLANA_ADMIN_KEYPAIR": self.solana_admin_keypair,
            "EVM_RPC_URL": self.evm_rpc_url,
            "EVM_CONTRACT_ADDRESS": self.evm_contract_address,
            "EVM_ADMIN_PRIVATE_KEY": self.evm_admin_private_key,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

        if self.native_min_amount < 0 or self.native_min_amount > self.native_max_amount:
            raise ConfigurationError("NATIVE_MIN_AMOUNT must be within [0, NATIVE_MAX_AMOUNT]")
        if self.contract_min_amount < 0 or self.contract_min_amount > self.contract_max_amount:
            raise ConfigurationError(
                "CONTRACT_MIN_AMOUNT must be within [0, CONTRACT_MAX_AMOUNT]"
            )
        if self.max_dispatch_attempts < 1:
            raise ConfigurationError("MAX_DISPATCH_ATTEMPTS must be at least 1")

    def get_safe_dict(self) -> dict:
        """Return settings dict with secrets redacted."""
        return {
            "environment": self.environment,
            "debug": self.debug,
            "database_url": self._redact_url(self.database_url),
            "solana": {
                "rpc": self.solana_rpc_url,
                "ws": self.solana_websocket_url,
                "program_id": self.solana_program_id or "(not set)",
                "admin_keypair": "***" if self.solana_admin_keypair else "(not set)",
                "bounds": [self.native_min_amount, self.native_max_amount],
            },
            "evm": {
                "rpc": self.evm_rpc_url or "(not set)",
                "ws": self.evm_websocket_url or "(not set)",
                "contract": self.evm_contract_address or "(not set)",
                "admin_key": "***" if self.evm_admin_private_key else "(not set)",
                "bounds": [self.contract_min_amount, self.contract_max_amount],
            },
            "conversion": {
                "native_decimals": self.native_decimals,
                "contract_decimals": self.contract_decimals,
                "exchange_rate": str(self.exchange_rate),
                "rounding": self.rounding,
            },
            "dispatch": {
                "confirmation_timeout": self.confirmation_timeout,
                "max_attempts": self.max_dispatch_attempts,
            },
        }

    @staticmethod
    def _derive_ws_url(url: str) -> str:
        """Map an http(s) RPC URL onto its ws(s) counterpart."""
        if url.startswith("https://"):
            return "wss://" + url[len("https://"):]
        if url.startswith("http://"):
            return "ws://" + url[len("http://"):]
        return url

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
