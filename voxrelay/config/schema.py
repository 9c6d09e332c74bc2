"""Pydantic v2 models for voxrelay settings.

Settings are built once at startup (YAML file + environment) and never
mutated afterwards. The gateway, tunnel manager and rate limiter receive the
same frozen instance at construction time.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

DEFAULT_REMOTE_HTTP_BASE = "https://generativelanguage.googleapis.com"
DEFAULT_REMOTE_WS_BASE = "wss://generativelanguage.googleapis.com"


class RateLimitSettings(BaseModel):
    """Sliding-window limits applied to the mount path.

    ``trusted_proxies`` is the number of reverse-proxy hops in front of
    voxrelay whose ``X-Forwarded-For`` entries are trusted. 0 means the
    peer address is always used.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    window_seconds: float = Field(default=15 * 60, gt=0)
    max_requests: int = Field(default=100, ge=1)
    trusted_proxies: int = Field(default=1, ge=0)


class Settings(BaseModel):
    """Process-wide voxrelay configuration."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    listen_host: str = "0.0.0.0"
    listen_port: int = Field(default=3000, ge=0, le=65535)

    mount_prefix: str = "/api-proxy"
    remote_http_base: str = DEFAULT_REMOTE_HTTP_BASE
    remote_ws_base: str = DEFAULT_REMOTE_WS_BASE

    api_key: SecretStr | None = None
    credential_header: str = "X-Goog-Api-Key"
    credential_query_param: str = "key"

    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)

    static_dir: str = "dist"
    public_dir: str = "public"

    max_body_bytes: int = Field(default=50 * 1024 * 1024, ge=1)
    max_ws_message_bytes: int = Field(default=25 * 1024 * 1024, ge=1)
    upstream_connect_timeout: float = Field(default=30.0, gt=0)

    @field_validator("mount_prefix")
    @classmethod
    def _check_mount_prefix(cls, value: str) -> str:
        if not value.startswith("/"):
            msg = f"mount_prefix must start with '/', got {value!r}"
            raise ValueError(msg)
        if value != "/" and value.endswith("/"):
            value = value.rstrip("/")
        if value in ("", "/"):
            msg = "mount_prefix cannot be the site root"
            raise ValueError(msg)
        return value

    @field_validator("remote_http_base")
    @classmethod
    def _check_http_base(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            msg = f"remote_http_base must be an http(s) URL, got {value!r}"
            raise ValueError(msg)
        return value.rstrip("/")

    @field_validator("remote_ws_base")
    @classmethod
    def _check_ws_base(cls, value: str) -> str:
        if not value.startswith(("ws://", "wss://")):
            msg = f"remote_ws_base must be a ws(s) URL, got {value!r}"
            raise ValueError(msg)
        return value.rstrip("/")

    @field_validator("api_key", mode="before")
    @classmethod
    def _blank_key_is_missing(cls, value: object) -> object:
        # An empty API_KEY= line in .env means "not configured".
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def credential(self) -> str | None:
        """The upstream API key in clear text, or None when not configured."""
        if self.api_key is None:
            return None
        return self.api_key.get_secret_value()

    @property
    def has_credential(self) -> bool:
        return self.api_key is not None

    def owns_path(self, path: str) -> bool:
        """Return True if *path* is the mount prefix or lies under it."""
        return path == self.mount_prefix or path.startswith(self.mount_prefix + "/")
