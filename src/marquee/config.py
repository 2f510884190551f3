"""Configuration management for the Marquee client core"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Client settings.

    Every timing constant of the auth and resilience layer lives here so it
    can be tuned through the environment (or a ``.env`` file) without code
    changes. Defaults match the media server's expectations.
    """

    # ===== Server =====
    server_url: str | None = Field(
        default=None,
        description="Media server base URL, e.g. https://cinema.example.com"
    )

    # ===== Credential Storage =====
    storage_backend: Literal["sqlite", "memory"] = "sqlite"
    storage_path: str = "data/credentials.db"

    # ===== HTTP Client =====
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    max_connections: int = 20
    max_keepalive_connections: int = 10
    keepalive_expiry: float = 30.0

    # Retry configuration (delay = base * 2^attempt)
    max_retries: int = 3
    retry_base_delay: float = 1.0

    # Circuit breaker
    circuit_breaker_threshold: int = 5  # Consecutive failures before opening
    circuit_breaker_cooldown: float = 60.0  # Seconds OPEN before a trial request
    circuit_breaker_reset_window: float = 300.0  # Idle seconds before counters reset

    # ===== Token Refresh =====
    token_refresh_attempts: int = 3
    token_refresh_delay: float = 1.0

    # ===== Server Health =====
    health_debounce_window: float = 5.0
    health_settle_delay: float = 1.0
    health_recovery_interval: float = 10.0
    health_probe_attempts: int = 3
    health_probe_retry_delay: float = 2.0
    health_probe_timeout: float = 5.0

    # ===== Auth Flows =====
    auth_poll_interval: float = 2.0
    auth_timeout: float = 300.0  # Wall-clock limit for one login/pairing flow
    device_type: Literal["tv", "mobile", "tablet", "desktop"] = "desktop"

    # ===== User Status =====
    user_status_interval: float = 30.0

    # ===== Logging =====
    log_level: str = "info"

    class Config:
        env_file = ".env"
        extra = "ignore"

    def validate_resilience_config(self) -> None:
        """Validate cross-field constraints of the resilience settings

        Raises:
            ValueError: If any timing or threshold setting is out of range
        """
        errors = []

        if self.max_retries < 0:
            errors.append(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_base_delay <= 0:
            errors.append(f"retry_base_delay must be > 0, got {self.retry_base_delay}")
        if self.circuit_breaker_threshold <= 0:
            errors.append(
                f"circuit_breaker_threshold must be > 0, got {self.circuit_breaker_threshold}"
            )
        if self.circuit_breaker_reset_window < self.circuit_breaker_cooldown:
            errors.append(
                f"circuit_breaker_reset_window ({self.circuit_breaker_reset_window}) must be >= "
                f"circuit_breaker_cooldown ({self.circuit_breaker_cooldown})"
            )
        if self.token_refresh_attempts <= 0:
            errors.append(
                f"token_refresh_attempts must be > 0, got {self.token_refresh_attempts}"
            )
        if self.health_probe_attempts <= 0:
            errors.append(
                f"health_probe_attempts must be > 0, got {self.health_probe_attempts}"
            )
        if self.auth_poll_interval <= 0:
            errors.append(f"auth_poll_interval must be > 0, got {self.auth_poll_interval}")
        if self.auth_timeout < self.auth_poll_interval:
            errors.append(
                f"auth_timeout ({self.auth_timeout}) must be >= "
                f"auth_poll_interval ({self.auth_poll_interval})"
            )

        if errors:
            raise ValueError(
                "Resilience configuration validation failed:\n  - " + "\n  - ".join(errors)
            )


# Global settings instance
settings = Settings()
