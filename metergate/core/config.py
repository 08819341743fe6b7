# metergate/core/config.py
from pydantic_settings import BaseSettings
from pydantic import Field
from functools import lru_cache
from typing import Any, Dict, List, Optional
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Meter Gate"
    METER_ENVIRONMENT: str = "development"

    # Admission window (seconds)
    METER_TIMESTAMP_MAX_AGE_SECONDS: int = 300
    METER_CLOCK_SKEW_SECONDS: int = 60

    # Nonce guard
    METER_NONCE_TTL_SECONDS: int = 3600
    METER_NONCE_SWEEP_INTERVAL_SECONDS: int = 300
    METER_NONCE_STORE: str = "memory"  # memory | file | redis
    METER_NONCE_STORE_PATH: str = "data/nonces.json"
    METER_REDIS_URL: Optional[str] = None

    # Delegated verification
    METER_FACILITATOR_ENABLED: bool = False
    METER_FACILITATOR_URL: Optional[str] = None
    METER_FACILITATOR_TIMEOUT_SECONDS: float = 5.0

    METER_LEDGER_TIMEOUT_SECONDS: float = 15.0

    # Route table: {"summarize:v1": {"price": 0.03, "mint": "...", "pay_to": "...", "chain": "solana-devnet"}}
    METER_ROUTES: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    # Agent keys: [{"key_id": "...", "public_key": "...", "algorithm": "ed25519"}]
    METER_AGENT_KEYS: List[Dict[str, Any]] = Field(default_factory=list)

    METER_AUDIT_ENABLED: bool = False
    METER_AUDIT_LOG_PATH: str = "logs/meter_audit.jsonl"

    METER_DEBUG_SIGNATURES: bool = False

    # Path prefixes gated by the middleware in the bundled app
    METER_PROTECTED_PATHS: List[str] = Field(default_factory=lambda: ["/api/"])

    # Client side
    METER_PRICE_CACHE_TTL_SECONDS: float = 60.0
    METER_CLIENT_MAX_ATTEMPTS: int = 3
    METER_CLIENT_BACKOFF_BASE_SECONDS: float = 1.0
    METER_HTTP_TIMEOUT_SECONDS: float = 10.0

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
