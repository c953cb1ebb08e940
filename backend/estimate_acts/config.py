from __future__ import annotations

from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "data" / "acts.db"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    database_url: str = Field(
        default=f"sqlite:///{DEFAULT_SQLITE_PATH}",
        validation_alias="DATABASE_URL",
    )
    auth_secret_key: str = Field(
        default="change-me",
        validation_alias="AUTH_SECRET_KEY",
    )
    auth_algorithm: str = Field(
        default="HS256",
        validation_alias="AUTH_ALGORITHM",
    )
    auth_access_token_expire_minutes: int = Field(
        default=60 * 12,
        validation_alias="AUTH_ACCESS_TOKEN_EXPIRE_MINUTES",
    )
    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
    )
    vat_rate: Decimal = Field(
        default=Decimal("0.20"),
        validation_alias="VAT_RATE",
    )
    cors_origins: list[str] = Field(
        default_factory=lambda: ["http://localhost:5173", "http://127.0.0.1:5173"],
        validation_alias="CORS_ORIGINS",
    )


settings = Settings()
