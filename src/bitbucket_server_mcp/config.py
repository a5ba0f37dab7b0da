"""Configuration loading for bitbucket-server-mcp.

Configuration is supplied by the host environment (e.g., MCP client config), not by the agent.
Credentials (token, password) are treated as secrets and must never be emitted to agents,
logs, or audit reasons.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from .errors import SafeError


@dataclass(frozen=True, slots=True)
class BearerToken:
    """Personal access token sent as ``Authorization: Bearer``."""

    token: str

    def __repr__(self) -> str:
        return "BearerToken(token=***)"


@dataclass(frozen=True, slots=True)
class BasicAuth:
    """Username/password pair sent as HTTP basic authentication."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"BasicAuth(username={self.username!r}, password=***)"


Credential = BearerToken | BasicAuth


@dataclass(frozen=True, slots=True)
class LimitsConfig:
    """Non-functional limits."""

    # Network
    timeout_s: float = 30.0
    connect_timeout_s: float = 5.0

    # Payload limits
    archive_max_bytes: int = 10 * 1024 * 1024

    # Defaults
    default_context_lines: int = 10


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Bitbucket server binding configuration."""

    base_url: str
    credential: Credential
    default_project: str | None = None
    default_reviewers: tuple[str, ...] = ()
    audit_log_path: Path | None = None
    audit_max_bytes: int = 5 * 1024 * 1024
    audit_max_backups: int = 2
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @property
    def api_base_url(self) -> str:
        return f"{self.base_url}/rest/api/latest"

    @property
    def auth_mode(self) -> str:
        return "bearer" if isinstance(self.credential, BearerToken) else "basic"


def _parse_reviewers(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    parts = [p.strip() for p in value.split(",")]
    return tuple(p for p in parts if p)


def _parse_timeout(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    try:
        timeout = float(value)
    except ValueError as exc:
        raise SafeError(code="Config", message="BITBUCKET_TIMEOUT_S must be a number of seconds") from exc
    if timeout <= 0:
        raise SafeError(code="Config", message="BITBUCKET_TIMEOUT_S must be positive")
    return timeout


def _resolve_credential(token: str | None, username: str | None, password: str | None) -> Credential:
    if token:
        return BearerToken(token=token)
    if username and password:
        return BasicAuth(username=username, password=password)
    raise SafeError(
        code="Config",
        message="Either BITBUCKET_TOKEN or BITBUCKET_USERNAME/PASSWORD is required",
    )


def load_config_from_env() -> ServerConfig:
    """Load and validate configuration from environment variables.

    Raises:
        SafeError: If configuration is missing/invalid.
    """
    base_url = (os.getenv("BITBUCKET_URL") or "").strip().rstrip("/")
    if not base_url:
        raise SafeError(code="Config", message="BITBUCKET_URL is required")

    parsed = urlparse(base_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise SafeError(code="Config", message="BITBUCKET_URL must be an http(s) URL")

    credential = _resolve_credential(
        os.getenv("BITBUCKET_TOKEN"),
        os.getenv("BITBUCKET_USERNAME"),
        os.getenv("BITBUCKET_PASSWORD"),
    )

    default_project = (os.getenv("BITBUCKET_DEFAULT_PROJECT") or "").strip() or None
    default_reviewers = _parse_reviewers(os.getenv("BITBUCKET_DEFAULT_REVIEWERS"))

    limits = LimitsConfig(timeout_s=_parse_timeout(os.getenv("BITBUCKET_TIMEOUT_S"), LimitsConfig().timeout_s))

    audit_path_raw = os.getenv("BITBUCKET_MCP_AUDIT_LOG_PATH")
    audit_path: Path | None = None
    if audit_path_raw:
        p = Path(audit_path_raw)
        if not p.is_absolute():
            raise SafeError(code="Config", message="BITBUCKET_MCP_AUDIT_LOG_PATH must be an absolute path when set")
        audit_path = p

    return ServerConfig(
        base_url=base_url,
        credential=credential,
        default_project=default_project,
        default_reviewers=default_reviewers,
        audit_log_path=audit_path,
        limits=limits,
    )
