# vehicle_registry/settings.py
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    RPC_URL: str = "http://127.0.0.1:8545"
    CONTRACT_ADDRESS: Optional[str] = None
    CHAIN_ID: int = 31337
    SUBMITTER_PK: str | None = None
    ABI_PATH: str | None = None
    REGISTRY_FROM_BLOCK: int = 0

    # fee amounts are whole PKR; 1 PKR == 1e13 wei (100000 PKR per ETH)
    WEI_PER_FEE_UNIT: int = 10**13
    CHAIN_RECEIPT_TIMEOUT: int = 120
    SUBMISSION_GRACE_SECONDS: int = 900

    DATABASE_URL: str = "sqlite:///./registry.db"
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    ANNUAL_TAX_ENABLED: bool = False

    CALENDAR_URL: str | None = None
    CALENDAR_TOKEN: str | None = None
    SLOT_CALENDAR_DAYS: int = 30
    SLOT_TIMES: List[str] = ["09:00", "11:00", "14:00"]

    RECONCILE_INTERVAL_MINUTES: int = 5

    ADMIN_API_KEY: str | None = None
    REQUIRE_WALLET_SIGNATURE: bool = False

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
