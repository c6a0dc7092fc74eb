"""Application settings and configuration.

This module defines all configuration options for the CipherRoom client core.
Settings are loaded from environment variables with sensible defaults.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_RSA_KEY_SIZE = 2048


class Settings(BaseSettings):
    """Client settings loaded from environment variables.

    Settings can be overridden via environment variables or .env files.
    """

    # Application metadata
    app_name: str = Field(default="CipherRoom", alias="APP_NAME")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Device-local identity key storage
    key_store_dir: Path = Field(
        default=Path("~/.cipherroom"),
        alias="CIPHERROOM_KEY_STORE_DIR",
    )
    key_store_passphrase: str | None = Field(
        default=None,
        alias="CIPHERROOM_KEY_STORE_PASSPHRASE",
    )
    rsa_key_size: int = Field(default=MIN_RSA_KEY_SIZE, alias="CIPHERROOM_RSA_KEY_SIZE")

    # Relational reference backend
    database_url: str = Field(default="sqlite:///./cipherroom.db", alias="DATABASE_URL")
    sql_debug: bool = Field(default=False, alias="SQL_DEBUG")

    # Hosted backend-as-a-service (PostgREST-style row API)
    backend_url: str | None = Field(default=None, alias="CIPHERROOM_BACKEND_URL")
    backend_api_key: str | None = Field(default=None, alias="CIPHERROOM_BACKEND_API_KEY")
    backend_http_timeout_seconds: float = Field(
        default=10.0,
        alias="CIPHERROOM_BACKEND_HTTP_TIMEOUT_SECONDS",
    )

    # Session key cache behaviour
    unwrap_attempt_limit: int = Field(default=3, alias="CIPHERROOM_UNWRAP_ATTEMPT_LIMIT")

    # Rendering of messages that exist but cannot be read on this device
    undecryptable_placeholder: str = Field(
        default="[Encrypted message: cannot be decrypted on this device]",
        alias="CIPHERROOM_UNDECRYPTABLE_PLACEHOLDER",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("rsa_key_size")
    @classmethod
    def _check_rsa_key_size(cls, value: int) -> int:
        if value < MIN_RSA_KEY_SIZE:
            raise ValueError(f"RSA identity keys must be at least {MIN_RSA_KEY_SIZE} bits")
        return value

    @field_validator("unwrap_attempt_limit")
    @classmethod
    def _check_unwrap_attempt_limit(cls, value: int) -> int:
        if value < 1:
            raise ValueError("unwrap_attempt_limit must be positive")
        return value

    @property
    def identity_key_path(self) -> Path:
        """Return the expanded path of the device-local identity key file."""
        return self.key_store_dir.expanduser() / "identity.pem"


settings = Settings()
