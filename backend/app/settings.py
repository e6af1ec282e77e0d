"""Environment driven configuration for the journal backend."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


logger = logging.getLogger(__name__)

DEFAULT_SESSION_SECRET = "change-me-in-production"


def _default_storage_path() -> Path:
    base_dir = Path(__file__).resolve().parent.parent
    return (base_dir / "storage" / "identity.json").resolve()


def _env_int(name: str, default: int) -> int:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    try:
        return int(raw_value)
    except ValueError:
        logger.warning("Ignoring non-integer value %r for %s", raw_value, name)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _env_str(name: str) -> str | None:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.replace("\\n", "\n").strip()
    return value or None


class PlatformBootstrap(BaseModel):
    """Platform registration declared through the environment."""

    issuer: str
    client_id: str
    deployment_id: str | None = None
    jwks_endpoint: str
    authorization_endpoint: str
    token_endpoint: str | None = None
    name: str | None = None


class Settings(BaseModel):
    session_secret: str = DEFAULT_SESSION_SECRET
    session_max_age: int = Field(default=86400, gt=0)
    session_cookie_name: str = "session"
    state_ttl: int = Field(default=600, gt=0)
    state_sweep_interval: float = Field(default=60.0, gt=0)
    jwks_timeout: float = Field(default=10.0, gt=0)
    launch_url: str | None = None
    frontend_url: str = "/"
    private_key_pem: str | None = None
    key_id: str | None = None
    storage_path: Path = Field(default_factory=_default_storage_path)
    platform: PlatformBootstrap | None = None
    api_auth_token: str | None = None
    demo_mode: bool = False
    frontend_origins: list[str] = Field(default_factory=lambda: ["http://localhost:8081"])
    environment: str = "development"

    model_config = ConfigDict(frozen=True)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        values: dict[str, Any] = {
            "session_secret": os.getenv("SESSION_SECRET") or DEFAULT_SESSION_SECRET,
            "session_max_age": _env_int("SESSION_MAX_AGE", 86400),
            "session_cookie_name": os.getenv("SESSION_COOKIE_NAME") or "session",
            "state_ttl": _env_int("LTI_STATE_TTL", 600),
            "state_sweep_interval": _env_int("LTI_STATE_SWEEP_INTERVAL", 60),
            "jwks_timeout": _env_int("LTI_JWKS_TIMEOUT", 10),
            "launch_url": _env_str("LTI_LAUNCH_URL"),
            "frontend_url": os.getenv("FRONTEND_URL") or "/",
            "private_key_pem": _read_private_key(),
            "key_id": _env_str("LTI_KEY_ID"),
            "api_auth_token": _env_str("API_AUTH_TOKEN"),
            "demo_mode": _env_bool("DEMO_MODE", False),
            "environment": (os.getenv("APP_ENV") or "development").strip().lower(),
        }

        raw_path = os.getenv("IDENTITY_STORAGE_PATH")
        if raw_path:
            candidate = Path(raw_path).expanduser().resolve()
            values["storage_path"] = candidate / "identity.json" if candidate.is_dir() else candidate

        origins = os.getenv("FRONTEND_ORIGIN")
        if origins:
            values["frontend_origins"] = [item.strip() for item in origins.split(",") if item.strip()]

        issuer = _env_str("LTI_ISSUER")
        client_id = _env_str("LTI_CLIENT_ID")
        jwks_endpoint = _env_str("LTI_JWKS_ENDPOINT")
        auth_endpoint = _env_str("LTI_AUTH_ENDPOINT")
        if issuer and client_id and jwks_endpoint and auth_endpoint:
            values["platform"] = PlatformBootstrap(
                issuer=issuer,
                client_id=client_id,
                deployment_id=_env_str("LTI_DEPLOYMENT_ID"),
                jwks_endpoint=jwks_endpoint,
                authorization_endpoint=auth_endpoint,
                token_endpoint=_env_str("LTI_TOKEN_ENDPOINT"),
                name=_env_str("LTI_PLATFORM_NAME"),
            )
        elif issuer or client_id:
            logger.warning(
                "Incomplete LTI platform configuration, LTI_ISSUER, LTI_CLIENT_ID, "
                "LTI_JWKS_ENDPOINT and LTI_AUTH_ENDPOINT are all required"
            )
        return cls.model_validate(values)

    def warnings(self) -> list[str]:
        """List configuration problems worth surfacing at startup."""

        issues: list[str] = []
        if not self.is_production:
            return issues
        if self.session_secret == DEFAULT_SESSION_SECRET:
            issues.append("SESSION_SECRET must be changed in production")
        if self.platform is None:
            issues.append("LTI platform configuration (LTI_ISSUER, LTI_CLIENT_ID) is missing in production")
        if self.demo_mode:
            issues.append("DEMO_MODE is enabled in production")
        return issues


def _read_private_key() -> str | None:
    inline = _env_str("LTI_PRIVATE_KEY")
    if inline:
        return inline
    path_value = os.getenv("LTI_PRIVATE_KEY_PATH")
    if not path_value:
        return None
    path = Path(path_value)
    if not path.exists():
        logger.warning("LTI_PRIVATE_KEY_PATH %s does not exist, a key will be generated", path_value)
        return None
    return path.read_text(encoding="utf-8")


__all__ = ["DEFAULT_SESSION_SECRET", "PlatformBootstrap", "Settings"]
