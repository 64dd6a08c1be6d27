# app/core/config.py
from typing import Literal, Optional
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "x402 Bazaar"
    API_V1_STR: str = "/api/v1"

    # Deployment mode decides which chains are advertised and accepted
    NETWORK: Literal["mainnet", "testnet"] = "testnet"

    # Recipient of every USDC payment (server wallet, never a private key)
    WALLET_ADDRESS: Optional[str] = None

    # JSON-RPC providers, one per supported chain
    BASE_RPC_URL: AnyHttpUrl = "https://mainnet.base.org"
    BASE_SEPOLIA_RPC_URL: AnyHttpUrl = "https://sepolia.base.org"
    SKALE_RPC_URL: AnyHttpUrl = "https://mainnet.skalenodes.com/v1/elated-tan-skat"

    # Durable replay ledger and activity sink
    DATABASE_URL: str = "sqlite:///./x402_bazaar.db"
    ACTIVITY_LOG_PATH: str = "logs/activity.jsonl"

    # Outbound call bounds (seconds)
    RPC_TIMEOUT_SECONDS: float = 10.0
    AUDIT_TIMEOUT_SECONDS: float = 10.0
    LIVENESS_TIMEOUT_SECONDS: float = 5.0

    REPLAY_CACHE_SIZE: int = 10000
    BUDGET_ENABLED: bool = True

    # Budget administration routes require this key when set
    API_KEY: Optional[str] = None
    API_KEY_NAME: str = "X-API-Key"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
