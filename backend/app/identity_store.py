"""Persistent store for trusted LTI platforms and the users they vouch for."""

from __future__ import annotations

import copy
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator

from pydantic import AnyUrl, BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator


logger = logging.getLogger(__name__)

_ANY_URL = TypeAdapter(AnyUrl)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _validate_url(value: str, field_name: str) -> str:
    trimmed = value.strip()
    try:
        parsed = _ANY_URL.validate_python(trimmed)
    except ValidationError as exc:
        raise ValueError(f"{field_name} must be an absolute URL") from exc
    if parsed.scheme not in {"http", "https"}:
        raise ValueError(f"{field_name} must use http or https")
    # keep the caller's spelling, AnyUrl appends a trailing slash to bare hosts
    return trimmed


class IdentityStoreError(RuntimeError):
    """Raised when the identity store cannot fulfil an operation."""


class PlatformNotFoundError(IdentityStoreError):
    """Raised when no trusted platform matches a lookup."""


class UserNotFoundError(IdentityStoreError):
    """Raised when no local user matches a lookup."""


class Platform(BaseModel):
    """A trusted LMS deployment acting as the OIDC identity provider."""

    id: int = 0
    issuer: str
    client_id: str = Field(min_length=1)
    deployment_id: str | None = None
    jwks_endpoint: str
    authorization_endpoint: str
    token_endpoint: str | None = None
    name: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    model_config = ConfigDict(validate_assignment=True, str_strip_whitespace=True)

    @model_validator(mode="after")
    def _normalize(self) -> "Platform":
        object.__setattr__(self, "issuer", _validate_url(self.issuer, "issuer"))
        object.__setattr__(self, "jwks_endpoint", _validate_url(self.jwks_endpoint, "jwks_endpoint"))
        object.__setattr__(
            self,
            "authorization_endpoint",
            _validate_url(self.authorization_endpoint, "authorization_endpoint"),
        )
        if self.token_endpoint:
            object.__setattr__(self, "token_endpoint", _validate_url(self.token_endpoint, "token_endpoint"))
        else:
            object.__setattr__(self, "token_endpoint", None)
        object.__setattr__(self, "deployment_id", self.deployment_id or None)
        object.__setattr__(self, "name", self.name or None)
        return self


class User(BaseModel):
    """Local identity linked to a platform-scoped external user id."""

    id: int
    external_id: str
    issuer: str
    display_name: str | None = None
    email: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    @property
    def key(self) -> tuple[str, str]:
        return (self.external_id, self.issuer)


def _empty_data() -> Dict[str, Any]:
    return {"platforms": [], "users": [], "sequences": {"platforms": 0, "users": 0}}


class IdentityStore:
    """Durable JSON store keeping LTI platforms and the users they launched."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = self._load()

    # ------------------------------------------------------------------
    # persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _empty_data()
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError as exc:
            raise IdentityStoreError(f"identity store {self._path} is corrupted") from exc
        if not isinstance(data, dict):
            raise IdentityStoreError(f"identity store {self._path} has an unexpected layout")
        data.setdefault("platforms", [])
        data.setdefault("users", [])
        data.setdefault("sequences", {"platforms": 0, "users": 0})
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        temp_path = self._path.with_suffix(".tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True, default=str)
            temp_path.replace(self._path)
        except OSError as exc:
            raise IdentityStoreError(f"unable to persist identity store: {exc}") from exc

    @contextmanager
    def _transaction(self) -> Iterator[Dict[str, Any]]:
        # mutations apply to a draft that only replaces the live data once persisted
        with self._lock:
            draft = copy.deepcopy(self._data)
            yield draft
            self._write(draft)
            self._data = draft

    @staticmethod
    def _next_id(data: Dict[str, Any], table: str) -> int:
        sequences = data.setdefault("sequences", {})
        value = int(sequences.get(table, 0)) + 1
        sequences[table] = value
        return value

    # ------------------------------------------------------------------
    # platform registry
    # ------------------------------------------------------------------
    def list_platforms(self) -> list[Platform]:
        with self._lock:
            return [Platform.model_validate(item) for item in self._data.get("platforms", [])]

    def find_platform_by_issuer(self, issuer: str) -> Platform:
        with self._lock:
            for item in self._data.get("platforms", []):
                if item.get("issuer") == issuer:
                    return Platform.model_validate(item)
        raise PlatformNotFoundError(f"no platform registered for issuer {issuer!r}")

    def find_platform_by_client_id(self, client_id: str) -> Platform:
        with self._lock:
            for item in self._data.get("platforms", []):
                if item.get("client_id") == client_id:
                    return Platform.model_validate(item)
        raise PlatformNotFoundError(f"no platform registered for client_id {client_id!r}")

    def create_platform(self, payload: dict[str, Any]) -> Platform:
        platform = self._validate_platform(payload)
        with self._transaction() as data:
            platforms = data.setdefault("platforms", [])
            if any(item.get("issuer") == platform.issuer for item in platforms):
                raise IdentityStoreError(f"platform {platform.issuer!r} is already registered")
            now = _now_iso()
            created = platform.model_copy(
                update={"id": self._next_id(data, "platforms"), "created_at": now, "updated_at": now}
            )
            platforms.append(created.model_dump(mode="json"))
        logger.info("Registered LTI platform %s (client_id=%s)", created.issuer, created.client_id)
        return created

    def update_platform(self, payload: dict[str, Any]) -> Platform:
        platform = self._validate_platform(payload)
        with self._transaction() as data:
            platforms = data.setdefault("platforms", [])
            index = next(
                (i for i, item in enumerate(platforms) if item.get("issuer") == platform.issuer),
                None,
            )
            if index is None:
                raise PlatformNotFoundError(f"no platform registered for issuer {platform.issuer!r}")
            current = Platform.model_validate(platforms[index])
            updated = platform.model_copy(
                update={"id": current.id, "created_at": current.created_at, "updated_at": _now_iso()}
            )
            platforms[index] = updated.model_dump(mode="json")
        logger.info("Updated LTI platform %s (client_id=%s)", updated.issuer, updated.client_id)
        return updated

    def upsert_platform(self, payload: dict[str, Any]) -> Platform:
        """Register a platform, updating the existing record for the same issuer."""

        with self._lock:
            try:
                return self.update_platform(payload)
            except PlatformNotFoundError:
                return self.create_platform(payload)

    def delete_platform(self, issuer: str) -> bool:
        with self._lock:
            if not any(item.get("issuer") == issuer for item in self._data.get("platforms", [])):
                return False
            with self._transaction() as data:
                data["platforms"] = [item for item in data.get("platforms", []) if item.get("issuer") != issuer]
        logger.info("Removed LTI platform %s", issuer)
        return True

    @staticmethod
    def _validate_platform(payload: dict[str, Any]) -> Platform:
        try:
            return Platform.model_validate(payload)
        except ValidationError as exc:
            raise IdentityStoreError(f"invalid platform registration: {exc}") from exc

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def get_user(self, user_id: int) -> User:
        with self._lock:
            for item in self._data.get("users", []):
                if item.get("id") == user_id:
                    return User.model_validate(item)
        raise UserNotFoundError(f"no user with id {user_id}")

    def list_users(self) -> list[User]:
        with self._lock:
            return [User.model_validate(item) for item in self._data.get("users", [])]

    def find_or_create_user(
        self,
        external_id: str,
        issuer: str,
        *,
        display_name: str | None = None,
        email: str | None = None,
    ) -> tuple[User, bool]:
        """Resolve the local user for ``(external_id, issuer)``.

        The first launch creates the user. Later launches refresh the display
        name and email when the platform sends new non-empty values; the pair
        itself is never duplicated. Returns the user and whether it was created.
        """

        external_value = external_id.strip() if external_id else ""
        issuer_value = issuer.strip() if issuer else ""
        if not external_value:
            raise IdentityStoreError("external user id cannot be empty")
        if not issuer_value:
            raise IdentityStoreError("issuer cannot be empty")

        with self._lock:
            users = self._data.get("users", [])
            index = next(
                (
                    i
                    for i, item in enumerate(users)
                    if item.get("external_id") == external_value and item.get("issuer") == issuer_value
                ),
                None,
            )
            if index is not None:
                current = User.model_validate(users[index])
                changes: dict[str, Any] = {}
                if display_name and display_name != current.display_name:
                    changes["display_name"] = display_name
                if email and email != current.email:
                    changes["email"] = email
                if not changes:
                    return current, False
                changes["updated_at"] = _now_iso()
                updated = current.model_copy(update=changes)
                with self._transaction() as data:
                    data["users"][index] = updated.model_dump(mode="json")
                return updated, False

            with self._transaction() as data:
                now = _now_iso()
                created = User(
                    id=self._next_id(data, "users"),
                    external_id=external_value,
                    issuer=issuer_value,
                    display_name=display_name or None,
                    email=email or None,
                    created_at=now,
                    updated_at=now,
                )
                data.setdefault("users", []).append(created.model_dump(mode="json"))
        logger.info("Created local user %s for %s at %s", created.id, external_value, issuer_value)
        return created, True


__all__ = [
    "IdentityStore",
    "IdentityStoreError",
    "Platform",
    "PlatformNotFoundError",
    "User",
    "UserNotFoundError",
]
