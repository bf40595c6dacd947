"""
Configuration and settings for the gateway.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from sandgate.errors import ConfigurationError
from sandgate.manifest import ManifestEntry


class Settings(BaseSettings):
    """Environment-backed settings for the gateway service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    log_level: str = Field(default="INFO")
    admin_prefix: str = Field(default="/_gateway")

    # Backend process (the ComputeUnit)
    backend_command: list[str] = Field(default_factory=list)
    backend_env: dict[str, str] = Field(default_factory=dict)
    backend_workdir: Optional[str] = Field(default=None)
    backend_host: str = Field(default="127.0.0.1")
    backend_port: int = Field(default=18789)
    backend_health_path: str = Field(default="/")

    start_max_attempts: int = Field(default=60, ge=1)
    start_initial_delay_seconds: float = Field(default=0.25, gt=0)
    start_max_delay_seconds: float = Field(default=5.0, gt=0)
    start_timeout_seconds: float = Field(default=180.0, gt=0)
    stop_timeout_seconds: float = Field(default=10.0, gt=0)
    probe_timeout_seconds: float = Field(default=2.0, gt=0)
    health_interval_seconds: int = Field(default=30, ge=1)
    health_failure_threshold: int = Field(default=3, ge=1)

    # Access control (JWT bearer tokens, JWKS key set)
    auth_dev_bypass: bool = Field(default=False)
    jwks_url: Optional[str] = Field(default=None)
    jwt_audience: Optional[str] = Field(default=None)
    jwt_issuer: Optional[str] = Field(default=None)
    jwt_algorithms: list[str] = Field(default_factory=lambda: ["RS256"])
    jwt_leeway_seconds: int = Field(default=0, ge=0)
    token_header: str = Field(default="cf-access-jwt-assertion")
    token_cookie: Optional[str] = Field(default="CF_Authorization")
    jwks_ttl_seconds: float = Field(default=300.0, gt=0)
    jwks_grace_seconds: float = Field(default=900.0, ge=0)
    jwks_fetch_timeout_seconds: float = Field(default=5.0, gt=0)
    jwks_min_refresh_interval_seconds: float = Field(default=30.0, ge=0)

    # S3-compatible storage (R2, MinIO, AWS)
    s3_endpoint: Optional[str] = Field(default=None)
    s3_region: str = Field(default="auto")
    s3_bucket: Optional[str] = Field(default=None)
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)
    scheduler_enabled: bool = Field(default=True)

    # Durability sync
    sync_entries: list[ManifestEntry] = Field(
        default_factory=lambda: [
            ManifestEntry(name="state", local_dir="/data/state", remote_prefix="state")
        ]
    )
    sync_exclude: list[str] = Field(
        default_factory=lambda: ["*.lock", "*.tmp", ".git/*", "node_modules/*"]
    )
    sync_interval_seconds: int = Field(default=300, ge=1)
    sync_tick_timeout_seconds: float = Field(default=240.0, gt=0)
    sync_retry_attempts: int = Field(default=3, ge=1)
    sync_retry_base_delay_seconds: float = Field(default=0.5, ge=0)
    sync_on_shutdown: bool = Field(default=True)

    # Proxy
    proxy_connect_timeout_seconds: float = Field(default=10.0, gt=0)
    proxy_read_timeout_seconds: Optional[float] = Field(default=None)
    websocket_open_timeout_seconds: float = Field(default=10.0, gt=0)
    websocket_max_size: Optional[int] = Field(default=16 * 1024 * 1024)

    @property
    def backend_url(self) -> str:
        return f"http://{self.backend_host}:{self.backend_port}"

    @property
    def backend_ws_url(self) -> str:
        return f"ws://{self.backend_host}:{self.backend_port}"

    def validate_for_startup(self) -> None:
        """Raise ConfigurationError for settings the process cannot run without."""
        problems = []
        if not self.backend_command:
            problems.append("BACKEND_COMMAND is required")
        if not self.auth_dev_bypass:
            if not self.jwks_url:
                problems.append("JWKS_URL is required unless AUTH_DEV_BYPASS is set")
            if not self.jwt_audience:
                problems.append(
                    "JWT_AUDIENCE is required unless AUTH_DEV_BYPASS is set"
                )
        if self.s3_bucket and not self.use_in_memory_backends:
            if not (self.aws_access_key_id and self.aws_secret_access_key):
                problems.append(
                    "AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY are required with S3_BUCKET"
                )
        names = [entry.name for entry in self.sync_entries]
        if len(names) != len(set(names)):
            problems.append("SYNC_ENTRIES names must be unique")
        if problems:
            raise ConfigurationError("; ".join(problems))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
