from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GIFTCARDS_", env_file=".env", extra="ignore")

    storage_backend: Literal["json", "memory"] = "json"
    data_dir: Path = Path("data")
    companies_file: str = "creditDB.json"
    transactions_file: str = "transactions.json"

    # Acting user recorded on recharges that do not name one.
    operator_user_id: str = "admin"

    card_provider: str = "credit_gift"
    currency_code: str = "COP"
    card_emission_date: str = "2025-04-24T20:22:58.163"
    card_expiring_date: str = "2030-01-01T00:00:00"
    transaction_href_prefix: str = "gatewayqa"

    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    @property
    def companies_path(self) -> Path:
        return self.data_dir / self.companies_file

    @property
    def transactions_path(self) -> Path:
        return self.data_dir / self.transactions_file


@lru_cache
def get_settings() -> Settings:
    return Settings()
