# config.py
"""
Environment configuration for the NFT delivery backend.

All settings come from the process environment (optionally a .env file).
Missing critical variables abort startup.
"""
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

CRITICAL_ENV = [
    "PI_API_KEY",
    "PI_VALIDATION_KEY",
    "SESSION_SECRET",
    "NFT_CONTRACT_ADDRESS",
    "NFT_SENDER_ADDRESS",
    "PI_RECEIVER_WALLET",
    "NFT_PRICE_PI",
    "NFT_TOKEN_ID",
    "POLYGON_RPC_URL",
    "SENDER_PRIVATE_KEY",
]

PI_API_MAINNET = "https://api.minepi.com/v2"
PI_API_TESTNET = "https://api.minepi.com/testnet/v2"


class ConfigError(RuntimeError):
    """Raised when the environment cannot produce a usable configuration."""


def parse_origins(raw: Optional[str]) -> List[str]:
    """Comma-separated FRONTEND_URL into CORS origins; unset allows any origin."""
    origins = [origin.strip() for origin in (raw or "").split(",") if origin.strip()]
    return origins or ["*"]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    pi_api_key: str
    pi_validation_key: str
    pi_receiver_wallet: str
    use_pi_testnet: bool
    session_secret: str

    nft_contract_address: str
    nft_sender_address: str
    sender_private_key: str
    nft_token_id: int
    nft_price_pi: Decimal
    polygon_rpc_url: str

    max_supply: int = 2000
    per_wallet_cap: int = 10
    max_per_tx: int = 10

    pi_api_timeout: float = 10.0
    rpc_timeout: float = 10.0
    confirmation_timeout: float = 120.0

    frontend_url: Optional[str] = None
    log_level: str = "INFO"
    log_format: str = "json"

    @property
    def pi_payments_url(self) -> str:
        base = PI_API_TESTNET if self.use_pi_testnet else PI_API_MAINNET
        return f"{base}/payments"

    @property
    def cors_origins(self) -> List[str]:
        return parse_origins(self.frontend_url)

    @property
    def pi_me_url(self) -> str:
        return f"{PI_API_MAINNET}/me"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from os.environ.

        Raises:
            ConfigError: if a critical variable is missing or malformed.
        """
        missing = [key for key in CRITICAL_ENV if not os.getenv(key)]
        if missing:
            raise ConfigError(f"Missing env variables: {', '.join(missing)}")

        try:
            price = Decimal(os.environ["NFT_PRICE_PI"])
        except InvalidOperation:
            raise ConfigError(f"NFT_PRICE_PI must be a decimal, got {os.environ['NFT_PRICE_PI']!r}")
        if price <= 0:
            raise ConfigError("NFT_PRICE_PI must be positive")

        settings = cls(
            pi_api_key=os.environ["PI_API_KEY"],
            pi_validation_key=os.environ["PI_VALIDATION_KEY"],
            pi_receiver_wallet=os.environ["PI_RECEIVER_WALLET"],
            use_pi_testnet=os.getenv("USE_PI_TESTNET", "false").lower() == "true",
            session_secret=os.environ["SESSION_SECRET"],
            nft_contract_address=os.environ["NFT_CONTRACT_ADDRESS"],
            nft_sender_address=os.environ["NFT_SENDER_ADDRESS"],
            sender_private_key=os.environ["SENDER_PRIVATE_KEY"],
            nft_token_id=_int_env("NFT_TOKEN_ID", 10),
            nft_price_pi=price,
            polygon_rpc_url=os.environ["POLYGON_RPC_URL"],
            max_supply=_int_env("NFT_MAX_SUPPLY", 2000),
            per_wallet_cap=_int_env("PER_WALLET_CAP", 10),
            max_per_tx=_int_env("MAX_PER_TX", 10),
            pi_api_timeout=_float_env("PI_API_TIMEOUT", 10.0),
            rpc_timeout=_float_env("RPC_TIMEOUT", 10.0),
            confirmation_timeout=_float_env("CONFIRMATION_TIMEOUT", 120.0),
            frontend_url=os.getenv("FRONTEND_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )

        if settings.max_supply < 0 or settings.per_wallet_cap < 1 or settings.max_per_tx < 1:
            raise ConfigError("NFT_MAX_SUPPLY, PER_WALLET_CAP and MAX_PER_TX must be positive")
        return settings
