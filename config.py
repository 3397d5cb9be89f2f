from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    runtime configuration, loaded from STAKING_* environment variables (or .env).
    """

    model_config = SettingsConfigDict(
        env_prefix="STAKING_",
        env_file=".env",
        extra="ignore",
    )

    # database (pending-stake cache + referral tables)
    database_dsn: str = "dbname=greendash user=greendash password=secret host=localhost port=5432"

    # system of record
    backend_url: str = "http://localhost:3000/api/v1"
    backend_token: Optional[str] = None
    http_timeout_seconds: float = 15.0

    # chain / token
    rpc_url: str = "https://bsc-dataseed1.binance.org/"
    chain_id: int = 56
    usdt_token_address: str = "0x55d398326f99059fF775485246999027B3197955"
    usdt_decimals: int = 18
    signer_private_key: Optional[str] = None
    receipt_timeout_seconds: int = 180

    # fallbacks used when the admin settings lookup has no value
    default_token_price: Decimal = Field(default=Decimal("0.01"))
    default_withdrawal_fee_percent: Decimal = Field(default=Decimal("10"))


@lru_cache
def get_settings() -> Settings:
    return Settings()
