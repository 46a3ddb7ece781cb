from enum import Enum
from pathlib import Path
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CostPricePolicy(str, Enum):
    LATEST = "latest"
    WEIGHTED_AVERAGE = "weighted_average"
    FIXED = "fixed"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", frozen=True)

    database_url: str = "sqlite:///./inventory.db"
    logs_dir: Path = Path("./logs")
    log_level: str = "INFO"
    cost_price_policy: CostPricePolicy = CostPricePolicy.LATEST
    low_stock_threshold: int = Field(10, ge=0)
    # comma separated
    cors_origins: str = "http://localhost:3000"

    @field_validator("cost_price_policy", mode="before")
    @classmethod
    def _policy_lower(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("log_level")
    @classmethod
    def _level_upper(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


def load_settings() -> Settings:
    return Settings()


settings = load_settings()
