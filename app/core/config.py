# app/core/config.py
from pydantic_settings import BaseSettings
from pydantic import AnyHttpUrl, field_validator # AnyHttpUrl stays in pydantic core
from functools import lru_cache
from typing import List, Optional
from dotenv import load_dotenv

# Load .env file if it exists
load_dotenv()

class Settings(BaseSettings):
    PROJECT_NAME: str = "Auton Content Gateway"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Ledger
    SOLANA_RPC_URL: AnyHttpUrl = "https://api.devnet.solana.com"
    SOLANA_NETWORK: str = "devnet"
    SOLANA_COMMITMENT: str = "confirmed"
    SOLANA_RPC_TIMEOUT_SECONDS: float = 10.0
    USDC_MINT_ADDRESS: str = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

    # Payments
    PLATFORM_FEE_PERCENTAGE: float = 0.75
    PAYMENT_TTL_MINUTES: int = 10
    PAYMENT_TOLERANCE_PERCENT: int = 95
    LEDGER_RETRY_ATTEMPTS: int = 3
    LEDGER_RETRY_BASE_DELAY_SECONDS: float = 1.0
    # The buyer must be a signer of the transaction that pays for their intent
    PAYMENT_REQUIRE_BUYER_SIGNATURE: bool = True

    # Access tokens
    ACCESS_TOKEN_SECRET: str
    ACCESS_TOKEN_TTL_SECONDS: int = 300
    # By default an expired token is rejected before its HMAC is checked
    ACCESS_TOKEN_VERIFY_SIGNATURE_FIRST: bool = False

    # Content encryption (hex encoded 32-byte AES-256 key)
    ENCRYPTION_SECRET_KEY: str

    # Vault wallet (base64 encoded 64-byte secret key)
    VAULT_WALLET_PRIVATE_KEY: str
    VAULT_WALLET_ADDRESS: str
    VAULT_BALANCE_WARN_LAMPORTS: int = 500_000_000
    VAULT_BALANCE_CRITICAL_LAMPORTS: int = 50_000_000

    # Sponsorship
    VAULT_SPONSORSHIP_AMOUNT: int = 10_000_000
    SPONSOR_DUST_THRESHOLD_LAMPORTS: int = 5000
    SPONSOR_ALLOWED_PROGRAMS: Optional[str] = None # Comma-separated program ids, empty allows all
    SPONSOR_RATE_LIMIT: int = 5
    SPONSOR_RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # Abuse controls
    RATE_LIMIT_PER_MINUTE: int = 100
    ABUSE_MAX_WALLETS_PER_IP: int = 3
    ABUSE_MIN_ACCOUNT_AGE_SECONDS: int = 60

    # Storage
    DATABASE_PATH: Optional[str] = "data/db.json"
    AUDIT_LOG_PATH: str = "logs/audit.jsonl"

    @field_validator("ENCRYPTION_SECRET_KEY")
    @classmethod
    def validate_encryption_key(cls, value: str) -> str:
        try:
            key = bytes.fromhex(value)
        except ValueError:
            raise ValueError("ENCRYPTION_SECRET_KEY must be hex encoded")
        if len(key) != 32:
            raise ValueError("ENCRYPTION_SECRET_KEY must decode to 32 bytes")
        return value

    @field_validator("ACCESS_TOKEN_SECRET", "VAULT_WALLET_PRIVATE_KEY", "VAULT_WALLET_ADDRESS")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("secret must not be blank")
        return value

    @property
    def sponsor_allowed_programs(self) -> List[str]:
        if not self.SPONSOR_ALLOWED_PROGRAMS:
            return []
        return [p.strip() for p in self.SPONSOR_ALLOWED_PROGRAMS.split(",") if p.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields from .env

@lru_cache() # Cache the settings object for performance
def get_settings() -> Settings:
    return Settings()

settings = get_settings()
