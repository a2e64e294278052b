# micropay/core/config.py
from decimal import Decimal
from functools import lru_cache
from typing import Dict, Literal, Optional

from dotenv import load_dotenv
from pydantic import AnyHttpUrl, ValidationError
from pydantic_settings import BaseSettings

from micropay.core.errors import ConfigurationError

# Load .env file if it exists
load_dotenv()

# STRK fee token on Starknet mainnet and Sepolia
DEFAULT_STRK_TOKEN_ADDRESS = "0x04718f5a0fc34cc1af16a1cdee98ffb20c31f5cd61d6ab07201858f4287c938d"


class Settings(BaseSettings):
    PROJECT_NAME: str = "Micropay Oracle"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Destination ledger (Starknet)
    STARKNET_RPC_URL: AnyHttpUrl
    STARKNET_CHAIN: Literal["SEPOLIA", "MAINNET"] = "SEPOLIA"
    ORACLE_ACCOUNT_ADDRESS: str
    ORACLE_PRIVATE_KEY: str
    PAYMENT_CONTRACT_ADDRESS: str
    TOKEN_CONTRACT_ADDRESS: str = DEFAULT_STRK_TOKEN_ADDRESS
    TOKEN_DECIMALS: int = 18
    # Proceeds go to the oracle account when no creator is configured
    CREATOR_ADDRESS: Optional[str] = None
    VOUCHER_EVENT_NAME: str = "VoucherPurchased"

    # Cross-chain swap provider
    SWAP_PROVIDER_URL: AnyHttpUrl
    SWAP_PROVIDER_API_KEY: Optional[str] = None
    SWAP_PROVIDER_TIMEOUT_SECONDS: float = 10.0

    # Reconciliation loop
    SETTLEMENT_PROTOCOL: Literal["swap", "voucher"] = "swap"
    SWAPS_DB_PATH: str = "swaps.json"
    ORACLE_POLL_INTERVAL_SECONDS: float = 10.0
    FINALITY_TIMEOUT_SECONDS: float = 120.0
    FINALITY_POLL_SECONDS: float = 5.0
    # Resumes tolerated while the node does not know a submitted transaction
    MAX_UNKNOWN_TX_POLLS: int = 10
    ORACLE_EMBEDDED: bool = False

    # Content catalog: content id -> price in whole tokens (JSON in env)
    CONTENT_PRICES: Dict[str, Decimal] = {
        "1": Decimal("0.001"),
        "2": Decimal("0.005"),
        "3": Decimal("0.002"),
    }

    AUDIT_LOG_PATH: str = "logs/oracle_audit.jsonl"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

    @property
    def effective_creator_address(self) -> str:
        return self.CREATOR_ADDRESS or self.ORACLE_ACCOUNT_ADDRESS


@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as e:
        problems = ", ".join(
            f"{'.'.join(str(part) for part in err['loc'])} ({err['msg']})"
            for err in e.errors()
        )
        raise ConfigurationError(f"Invalid or missing configuration: {problems}") from e

settings = get_settings()
