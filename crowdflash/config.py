"""Crowdflash server configuration via pydantic-settings."""

from __future__ import annotations

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from crowdflash.auth import is_hashed

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Server settings loaded from environment variables.

    All variables are prefixed with ``CROWDFLASH_`` (e.g. ``CROWDFLASH_PORT``).
    """

    # Listeners
    host: str = "0.0.0.0"
    port: int = 3000
    http_port: int = 3001  # 0 disables the HTTP API
    max_message_size: int = 65_536

    # Admin login
    admin_email: str = "admin@crowdflash.local"
    admin_password_hash: str = ""
    token_ttl_seconds: int = 12 * 3600
    max_tokens: int = 64

    # Event log
    log_capacity: int = 100
    log_history_size: int = 30

    # Periodic metrics push to admin consoles
    metrics_interval: float = 3.0

    # Remote address detection behind a reverse proxy
    trust_forwarded_for: bool = True

    # CORS for the HTTP API
    cors_origins: list[str] = ["http://localhost:3000"]
    # Seconds allowed for a request body to arrive
    http_read_timeout: float = 5.0

    model_config = SettingsConfigDict(
        env_prefix="CROWDFLASH_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def model_post_init(self, __context: object) -> None:
        """Refuse plaintext admin passwords; warn when login is disabled."""
        if not self.admin_password_hash:
            _logger.warning(
                "No admin password hash configured; admin login is disabled. "
                "Set CROWDFLASH_ADMIN_PASSWORD_HASH (generate with: crowdflash-auth hash <password>)"
            )
        elif not is_hashed(self.admin_password_hash):
            raise ValueError(
                "CROWDFLASH_ADMIN_PASSWORD_HASH must be a bcrypt: or sha256: hash, not plaintext. "
                "Generate one with: crowdflash-auth hash <password>"
            )
        if self.metrics_interval <= 0:
            raise ValueError("metrics_interval must be positive")
        if self.http_read_timeout <= 0:
            raise ValueError("http_read_timeout must be positive")
        if self.log_capacity <= 0 or self.log_history_size < 0:
            raise ValueError("log_capacity must be positive and log_history_size non-negative")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached ``Settings`` instance."""
    return Settings()
