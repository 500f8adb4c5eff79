"""
Application Settings

Environment-driven configuration for the reference-snippet verifier.
Values are read from the process environment and an optional `.env` file.
"""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Verifier settings (environment variables use the same upper-case names)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Oracle database
    DATABASE_URL: Optional[str] = Field(
        None, description="Full Postgres DSN; takes precedence over POSTGRES_*"
    )
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_DATABASE: str = "postgres"
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""

    # Connection pool
    POSTGRES_POOL_MIN_SIZE: int = Field(1, ge=0)
    POSTGRES_POOL_MAX_SIZE: int = Field(4, ge=1)
    POSTGRES_ACQUIRE_TIMEOUT: float = Field(30.0, gt=0)
    POSTGRES_CONNECT_RETRIES: int = Field(3, ge=1)
    POSTGRES_RETRY_DELAY: float = Field(1.0, ge=0)

    # Execution
    STATEMENT_TIMEOUT_SECONDS: float = Field(30.0, gt=0)
    DOCUMENT_TIMEOUT_SECONDS: Optional[float] = Field(300.0, gt=0)
    RUN_TIMEOUT_SECONDS: Optional[float] = Field(1800.0, gt=0)
    SANDBOX_SCHEMA_PREFIX: str = "refcheck"
    ISOLATION_MODE: Literal["transaction", "schema"] = "transaction"

    # Comparison
    FLOAT_TOLERANCE: float = Field(1e-9, ge=0)

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: Optional[str] = None

    def postgres_dsn(self) -> str:
        """Return the oracle DSN, building one from POSTGRES_* when unset."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        auth = self.POSTGRES_USER
        if self.POSTGRES_PASSWORD:
            auth = f"{auth}:{self.POSTGRES_PASSWORD}"
        return (
            f"postgresql://{auth}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}"
            f"/{self.POSTGRES_DATABASE}"
        )


settings = Settings()
