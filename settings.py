"""
Runtime configuration.

Values are read from the environment, with a local .env file as fallback.
The separate server variants of the old deployment are expressed here as
options instead of forked code.
"""
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = "mongodb://localhost:27017"
    database_name: str = "ecommerce"
    db_timeout_ms: int = Field(5000, gt=0)

    jwt_secret: str = "devsecret"
    jwt_algorithm: str = "HS256"
    jwt_expire_days: float = Field(1, gt=0)

    # comma separated
    cors_origins: str = "*"
    log_level: str = "INFO"
    log_json: bool = False
    port: int = 8000

    # conditional $push attempts before an add-to-cart gives up
    cart_add_retries: int = Field(5, ge=1)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, v: str) -> str:
        return v.upper()

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or ["*"]


_settings = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
