from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path
from typing import Optional


class Settings(BaseSettings):
    API_KEY: str = "change-me"
    API_KEY_HEADER: str = "X-API-Key"
    STORAGE_DIR: Path = Path("./uploads")

    # Support either a full DATABASE_URL or individual PG_* settings
    DATABASE_URL: Optional[str] = None
    PG_USER: str = "postgres"
    PG_PASSWORD: str = "postgres"
    PG_HOST: str = "localhost"
    PG_PORT: int = 5432
    PG_DB: str = "filemanager"
    DB_POOL_SIZE: int = 10

    # identifies this process in origin_instance; several instances share one database
    INSTANCE_ID: str = Field(default="unknown", validation_alias=AliasChoices("INSTANCE_ID", "APP_NAME"))
    UPLOADED_BY: str = "api-user"

    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024
    # upper bound on waiting for the dedup row lock
    LOCK_TIMEOUT_SECONDS: float = 5.0

    LOG_LEVEL: str = "INFO"
    LOG_DIR: Path = Path("./logs")
    LOG_TO_FILE: bool = True

    # Allow extra env vars to be ignored and load from .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore", populate_by_name=True)

    def __init__(self, **values):
        super().__init__(**values)
        # Build a Postgres URL when DATABASE_URL not provided
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+psycopg2://{self.PG_USER}:"
                f"{self.PG_PASSWORD}@{self.PG_HOST}:{self.PG_PORT}/{self.PG_DB}"
            )


settings = Settings()
