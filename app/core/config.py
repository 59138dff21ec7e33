from decimal import Decimal
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    database_url: str = Field("sqlite+aiosqlite:///./fee_ledger.db", alias="DATABASE_URL")

    jwt_secret_key: str = Field("change-me-in-production", alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field("HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(15, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Term splits are percentages of the net (post-concession) fee, in term order.
    tuition_term_split: str = Field("40,30,30", alias="TUITION_TERM_SPLIT")
    transport_term_split: str = Field("50,50", alias="TRANSPORT_TERM_SPLIT")

    ledger_conflict_retries: int = Field(3, alias="LEDGER_CONFLICT_RETRIES", ge=0)
    ledger_lock_timeout_seconds: float = Field(5.0, alias="LEDGER_LOCK_TIMEOUT_SECONDS", gt=0)
    ledger_operation_timeout_seconds: float = Field(10.0, alias="LEDGER_OPERATION_TIMEOUT_SECONDS", gt=0)

    log_level: str = Field("INFO", alias="LOG_LEVEL")

    db_echo: bool = Field(False, alias="DB_ECHO")
    # Create missing tables on startup (local runs); production schemas are migrated.
    auto_create_tables: bool = Field(False, alias="AUTO_CREATE_TABLES")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"
        populate_by_name = True

    @field_validator("tuition_term_split", "transport_term_split")
    @classmethod
    def _validate_split(cls, value: str) -> str:
        parts = parse_split(value)
        if not parts:
            raise ValueError("term split must list at least one percentage")
        if any(p <= 0 for p in parts):
            raise ValueError("term split percentages must be positive")
        if sum(parts) != Decimal("100"):
            raise ValueError("term split percentages must add up to 100")
        return value

    @property
    def tuition_split(self) -> List[Decimal]:
        return parse_split(self.tuition_term_split)

    @property
    def transport_split(self) -> List[Decimal]:
        return parse_split(self.transport_term_split)


def parse_split(value: str) -> List[Decimal]:
    return [Decimal(p.strip()) for p in value.split(",") if p.strip()]


settings = Settings()
