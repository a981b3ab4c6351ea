"""
config.py - Application settings

Settings come from the OS environment or a `.env` file at the repository
root. `create_app()` builds one `Settings` instance and passes it down;
nothing reads the environment after startup.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_REPO_DIR = Path(__file__).resolve().parent.parent
_ENV_FILE = _REPO_DIR / ".env"


class Settings(BaseSettings):
    DATABASE_URL: str = Field(
        f"sqlite:///{_REPO_DIR / 'todo.db'}",
        description="SQLAlchemy database URL",
    )
    ENVIRONMENT: str = Field(
        "development",
        description="'production' marks the session cookie Secure",
    )
    SESSION_COOKIE_NAME: str = Field("todo_session")
    SESSION_MAX_AGE_SECONDS: int = Field(
        60 * 60 * 24 * 30,
        description="Session lifetime, also used as the cookie max-age",
    )
    BLOB_DIR: Path = Field(
        _REPO_DIR / "blobs",
        description="Root directory for uploaded attachments",
    )
    MAX_ATTACHMENT_BYTES: int = Field(10 * 1024 * 1024)
    TODOS_PAGE_SIZE: int = Field(50)
    LOG_LEVEL: str = Field("INFO")

    model_config = SettingsConfigDict(
        env_file=str(_ENV_FILE),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"
