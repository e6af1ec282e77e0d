"""LTI 1.3 tool support for the Globe Expedition Journal backend.

This module covers the tool side of the LTI 1.3 launch:

* publishing the tool signing key as JWKS
* handling 3rd-party initiated login and launch validation
* keeping short-lived login state (state + nonce) between both legs
* issuing and verifying the stateless session tokens used by the API

State and the platform JWKS cache live in memory; trusted platforms and users
are persisted through :class:`~backend.app.identity_store.IdentityStore`.
Sessions are signed tokens without server-side state, so they cannot be revoked
before they expire. Cached platform key sets are never refreshed for the life
of the process.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx
import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from jwt import PyJWK, PyJWKSet, PyJWTError

from .identity_store import IdentityStore, IdentityStoreError, Platform, PlatformNotFoundError, User
from .settings import Settings


logger = logging.getLogger(__name__)


LTI_CLAIM = "https://purl.imsglobal.org/spec/lti/claim/"
MESSAGE_TYPE_CLAIM = LTI_CLAIM + "message_type"
VERSION_CLAIM = LTI_CLAIM + "version"
DEPLOYMENT_ID_CLAIM = LTI_CLAIM + "deployment_id"
TARGET_LINK_URI_CLAIM = LTI_CLAIM + "target_link_uri"
RESOURCE_LINK_CLAIM = LTI_CLAIM + "resource_link"
ROLES_CLAIM = LTI_CLAIM + "roles"
CONTEXT_CLAIM = LTI_CLAIM + "context"
LAUNCH_PRESENTATION_CLAIM = LTI_CLAIM + "launch_presentation"
CUSTOM_CLAIM = LTI_CLAIM + "custom"
TOOL_PLATFORM_CLAIM = LTI_CLAIM + "tool_platform"

RESOURCE_LINK_REQUEST = "LtiResourceLinkRequest"
DEEP_LINKING_REQUEST = "LtiDeepLinkingRequest"
SUPPORTED_MESSAGE_TYPES = frozenset({RESOURCE_LINK_REQUEST, DEEP_LINKING_REQUEST})

INSTRUCTOR_ROLES = (
    "http://purl.imsglobal.org/vocab/lis/v2/membership#Instructor",
    "http://purl.imsglobal.org/vocab/lis/v2/institution/person#Instructor",
)
LEARNER_ROLES = (
    "http://purl.imsglobal.org/vocab/lis/v2/membership#Learner",
    "http://purl.imsglobal.org/vocab/lis/v2/institution/person#Student",
)

ROLE_INSTRUCTOR = "instructor"
ROLE_LEARNER = "learner"
SESSION_ROLES = frozenset({ROLE_INSTRUCTOR, ROLE_LEARNER})

ID_TOKEN_ALGORITHM = "RS256"
SESSION_ALGORITHM = "HS256"
MIN_RSA_KEY_SIZE = 2048
INVALID_SESSION_MESSAGE = "invalid or expired session"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _origin(url: str | None) -> tuple[str, str] | None:
    if not url:
        return None
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        return None
    return parts.scheme.lower(), parts.netloc.lower()


class LaunchStage(str, Enum):
    """Steps of the login/launch handshake, ``REJECTED`` being terminal."""

    IDLE = "idle"
    LOGIN_REQUESTED = "login_requested"
    AWAITING_LAUNCH = "awaiting_launch"
    LAUNCH_RECEIVED = "launch_received"
    SESSION_ESTABLISHED = "session_established"
    REJECTED = "rejected"


class LTIError(RuntimeError):
    """Base class for failures surfaced to the HTTP client as ``{"error": ...}``."""

    status_code = 400
    stage: LaunchStage | None = None


class LTIConfigurationError(LTIError):
    """Raised when mandatory LTI configuration is missing or invalid."""

    status_code = 503


class LTIRequestError(LTIError):
    """Raised when a login or launch request misses a required parameter."""


class LTIPlatformError(LTIError):
    """Raised when the request references an unknown or mismatching platform."""


class LTIStateError(LTIError):
    """Raised when the launch state is unknown, expired or already used."""


class LTITokenValidationError(LTIError):
    """Raised when an id_token fails any cryptographic or claim check."""

    status_code = 401


class LTIInternalError(LTIError):
    """Raised when the launch fails on our side after the token was accepted."""

    status_code = 500


class LTIUserError(LTIInternalError):
    """Raised when the local user cannot be created or updated."""


class SessionError(LTIError):
    """Raised when a session token cannot be trusted."""

    status_code = 401


def base64url_uint(value: int) -> str:
    data = value.to_bytes((value.bit_length() + 7) // 8, "big")
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


# ----------------------------------------------------------------------
# state store
# ----------------------------------------------------------------------


@dataclass(slots=True)
class StateData:
    nonce: str
    target_link_uri: str | None
    client_id: str
    created_at: datetime | None = None


class LTIStateStore:
    """In-memory, single-use store binding a login state to its nonce.

    Entries older than ``ttl_seconds`` are unreachable and are purged by a
    background sweeper thread once :meth:`start_sweeper` has been called.
    """

    def __init__(
        self,
        ttl_seconds: int = 600,
        *,
        sweep_interval: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sweep_interval = sweep_interval
        self._clock = clock or _utcnow
        self._lock = threading.Lock()
        self._states: dict[str, StateData] = {}
        self._stop_event = threading.Event()
        self._sweeper: threading.Thread | None = None

    @staticmethod
    def generate_state() -> str:
        return secrets.token_urlsafe(32)

    @staticmethod
    def generate_nonce() -> str:
        return secrets.token_urlsafe(32)

    @property
    def ttl_seconds(self) -> int:
        return int(self._ttl.total_seconds())

    @property
    def sweep_interval(self) -> float:
        return self._sweep_interval

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)

    def _is_expired(self, record: StateData, now: datetime) -> bool:
        return record.created_at is None or now - record.created_at > self._ttl

    def store(self, state: str, data: StateData) -> None:
        with self._lock:
            data.created_at = self._clock()
            self._states[state] = data

    def get_and_consume(self, state: str) -> StateData | None:
        with self._lock:
            record = self._states.pop(state, None)
        if record is None or self._is_expired(record, self._clock()):
            return None
        return record

    def peek(self, state: str) -> StateData | None:
        with self._lock:
            record = self._states.get(state)
        if record is None or self._is_expired(record, self._clock()):
            return None
        return record

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, record in self._states.items() if self._is_expired(record, now)]
            for key in expired:
                del self._states[key]
        return len(expired)

    def start_sweeper(self) -> None:
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_event.clear()
        self._sweeper = threading.Thread(target=self._run_sweeper, name="lti-state-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self, timeout: float | None = None) -> None:
        self._stop_event.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout)
            self._sweeper = None

    def _run_sweeper(self) -> None:
        while not self._stop_event.wait(self._sweep_interval):
            removed = self.sweep()
            if removed:
                logger.debug("Purged %s expired LTI login states", removed)


# ----------------------------------------------------------------------
# tool keys
# ----------------------------------------------------------------------


def _compute_key_id(public_key: RSAPublicKey) -> str:
    numbers = public_key.public_numbers()
    modulus_bytes = numbers.n.to_bytes((numbers.n.bit_length() + 7) // 8, "big")
    return hashlib.sha256(modulus_bytes).hexdigest()[:16]


class LTIKeyManager:
    """Holds the tool RSA key and exposes its public half as JWKS."""

    def __init__(self, private_key: RSAPrivateKey | None = None, key_id: str | None = None) -> None:
        self._lock = threading.Lock()
        self._private_key = private_key
        self._key_id = key_id or (_compute_key_id(private_key.public_key()) if private_key else "")

    @classmethod
    def generate(cls, key_size: int = MIN_RSA_KEY_SIZE) -> "LTIKeyManager":
        if key_size < MIN_RSA_KEY_SIZE:
            raise LTIConfigurationError(f"RSA keys must be at least {MIN_RSA_KEY_SIZE} bits")
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
        key_id = secrets.token_urlsafe(8)
        logger.info("Generated %s-bit RSA tool key %s", key_size, key_id)
        return cls(private_key, key_id)

    @classmethod
    def from_pem(cls, pem: str | bytes, key_id: str | None = None) -> "LTIKeyManager":
        data = pem.encode("utf-8") if isinstance(pem, str) else pem
        try:
            private_key = serialization.load_pem_private_key(data, password=None)
        except (ValueError, TypeError) as exc:
            raise LTIConfigurationError("unable to load the LTI private key (invalid PEM)") from exc
        if not isinstance(private_key, RSAPrivateKey):
            raise LTIConfigurationError("the LTI private key must be an RSA key")
        if private_key.key_size < MIN_RSA_KEY_SIZE:
            raise LTIConfigurationError(f"RSA keys must be at least {MIN_RSA_KEY_SIZE} bits")
        return cls(private_key, key_id)

    @property
    def key_id(self) -> str:
        with self._lock:
            return self._key_id

    @property
    def private_key(self) -> RSAPrivateKey | None:
        with self._lock:
            return self._private_key

    def jwks_document(self) -> dict[str, Any]:
        with self._lock:
            private_key = self._private_key
            key_id = self._key_id
        if private_key is None:
            return {"keys": []}
        numbers = private_key.public_key().public_numbers()
        return {
            "keys": [
                {
                    "kty": "RSA",
                    "use": "sig",
                    "alg": ID_TOKEN_ALGORITHM,
                    "kid": key_id,
                    "n": base64url_uint(numbers.n),
                    "e": base64url_uint(numbers.e),
                }
            ]
        }

    def sign(self, payload: Mapping[str, Any], *, headers: Mapping[str, Any] | None = None) -> str:
        """Sign ``payload`` as an RS256 JWT advertising the published key id."""

        private_key = self.private_key
        if private_key is None:
            raise LTIConfigurationError("no LTI signing key is configured")
        merged_headers = {"kid": self.key_id, "typ": "JWT", **(headers or {})}
        return jwt.encode(dict(payload), private_key, algorithm=ID_TOKEN_ALGORITHM, headers=merged_headers)


# ----------------------------------------------------------------------
# id_token claims and validation
# ----------------------------------------------------------------------


def _mapping_claim(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _string_or_none(value: Any) -> str | None:
    if isinstance(value, str):
        trimmed = value.strip()
        if trimmed:
            return trimmed
    return None


@dataclass(slots=True)
class LTIClaims:
    """Decoded id_token claims with typed access to the fields the tool uses.

    Open-ended claims (context, custom, resource link...) stay available as
    plain mappings so platform specific extensions are preserved.
    """

    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        value = self.raw.get("sub")
        return str(value) if value is not None else ""

    @property
    def issuer(self) -> str | None:
        return _string_or_none(self.raw.get("iss"))

    @property
    def name(self) -> str | None:
        name = _string_or_none(self.raw.get("name"))
        if name:
            return name
        parts = [_string_or_none(self.raw.get("given_name")), _string_or_none(self.raw.get("family_name"))]
        joined = " ".join(part for part in parts if part)
        return joined or None

    @property
    def email(self) -> str | None:
        return _string_or_none(self.raw.get("email"))

    @property
    def locale(self) -> str | None:
        return _string_or_none(self.raw.get("locale"))

    @property
    def nonce(self) -> str | None:
        value = self.raw.get("nonce")
        return value if isinstance(value, str) else None

    @property
    def message_type(self) -> str | None:
        return _string_or_none(self.raw.get(MESSAGE_TYPE_CLAIM))

    @property
    def version(self) -> str | None:
        return _string_or_none(self.raw.get(VERSION_CLAIM))

    @property
    def deployment_id(self) -> str | None:
        return _string_or_none(self.raw.get(DEPLOYMENT_ID_CLAIM))

    @property
    def target_link_uri(self) -> str | None:
        return _string_or_none(self.raw.get(TARGET_LINK_URI_CLAIM))

    @property
    def roles(self) -> list[str]:
        value = self.raw.get(ROLES_CLAIM) or []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return []
        return [role for role in value if isinstance(role, str)]

    @property
    def context(self) -> dict[str, Any]:
        return _mapping_claim(self.raw.get(CONTEXT_CLAIM))

    @property
    def context_id(self) -> str:
        value = self.context.get("id")
        return value if isinstance(value, str) else ""

    @property
    def context_label(self) -> str:
        value = self.context.get("label")
        return value if isinstance(value, str) else ""

    @property
    def resource_link(self) -> dict[str, Any]:
        return _mapping_claim(self.raw.get(RESOURCE_LINK_CLAIM))

    @property
    def launch_presentation(self) -> dict[str, Any]:
        return _mapping_claim(self.raw.get(LAUNCH_PRESENTATION_CLAIM))

    @property
    def custom(self) -> dict[str, Any]:
        return _mapping_claim(self.raw.get(CUSTOM_CLAIM))

    @property
    def tool_platform(self) -> dict[str, Any]:
        return _mapping_claim(self.raw.get(TOOL_PLATFORM_CLAIM))

    def has_role(self, role: str) -> bool:
        return role in self.roles

    def is_instructor(self) -> bool:
        return any(self.has_role(role) for role in INSTRUCTOR_ROLES)

    def is_learner(self) -> bool:
        return any(self.has_role(role) for role in LEARNER_ROLES)

    @property
    def role(self) -> str:
        return ROLE_INSTRUCTOR if self.is_instructor() else ROLE_LEARNER


class LTITokenValidator:
    """Verifies platform id_tokens against the platform's published JWKS.

    Key sets are cached per JWKS URL for the life of the validator.
    """

    def __init__(self, *, timeout: float = 10.0) -> None:
        self._timeout = timeout
        self._lock = threading.Lock()
        self._key_sets: dict[str, PyJWKSet] = {}

    def cached_urls(self) -> list[str]:
        with self._lock:
            return list(self._key_sets)

    async def _retrieve_jwks(self, jwks_url: str) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                response = await client.get(jwks_url)
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPError as exc:
            raise LTITokenValidationError(f"unable to fetch platform JWKS: {exc}") from exc
        except ValueError as exc:
            raise LTITokenValidationError("platform JWKS is not valid JSON") from exc
        if not isinstance(document, dict):
            raise LTITokenValidationError("platform JWKS has an unexpected format")
        return document

    async def get_key_set(self, jwks_url: str) -> PyJWKSet:
        with self._lock:
            cached = self._key_sets.get(jwks_url)
        if cached is not None:
            logger.debug("Using cached JWKS for %s", jwks_url)
            return cached

        document = await self._retrieve_jwks(jwks_url)
        try:
            key_set = PyJWKSet.from_dict(document)
        except PyJWTError as exc:
            raise LTITokenValidationError(f"platform JWKS contains no usable key: {exc}") from exc

        with self._lock:
            # concurrent first launches may both fetch, the first stored set wins
            key_set = self._key_sets.setdefault(jwks_url, key_set)
        logger.info("Cached JWKS for %s (%s keys)", jwks_url, len(key_set.keys))
        return key_set

    @staticmethod
    def _select_key(key_set: PyJWKSet, kid: str | None) -> PyJWK:
        if kid:
            try:
                return key_set[kid]
            except KeyError as exc:
                raise LTITokenValidationError(f"no platform key matches kid {kid!r}") from exc
        if len(key_set.keys) == 1:
            return key_set.keys[0]
        raise LTITokenValidationError("token header has no kid and the platform publishes several keys")

    async def validate(self, token: str, platform: Platform, expected_nonce: str) -> LTIClaims:
        try:
            header = jwt.get_unverified_header(token)
        except PyJWTError as exc:
            raise LTITokenValidationError("malformed id_token") from exc

        key_set = await self.get_key_set(platform.jwks_endpoint)
        signing_key = self._select_key(key_set, header.get("kid"))

        try:
            payload = jwt.decode(
                token,
                key=signing_key.key,
                algorithms=[ID_TOKEN_ALGORITHM],
                audience=platform.client_id,
                issuer=platform.issuer,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise LTITokenValidationError("id_token has expired") from exc
        except jwt.InvalidIssuerError as exc:
            raise LTITokenValidationError("issuer mismatch") from exc
        except jwt.InvalidAudienceError as exc:
            raise LTITokenValidationError("audience mismatch") from exc
        except jwt.InvalidSignatureError as exc:
            raise LTITokenValidationError("signature verification failed") from exc
        except PyJWTError as exc:
            raise LTITokenValidationError(f"invalid id_token: {exc}") from exc

        audience = payload.get("aud")
        if isinstance(audience, list) and len(audience) > 1:
            authorized_party = payload.get("azp")
            if authorized_party is not None and authorized_party != platform.client_id:
                raise LTITokenValidationError("authorized party mismatch")

        claims = LTIClaims(payload)
        if claims.nonce != expected_nonce:
            raise LTITokenValidationError("nonce mismatch")
        if claims.message_type not in SUPPORTED_MESSAGE_TYPES:
            raise LTITokenValidationError(f"unsupported message type: {claims.message_type or ''}")
        if not claims.subject:
            raise LTITokenValidationError("id_token has no subject")
        return claims


# ----------------------------------------------------------------------
# sessions
# ----------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SessionClaims:
    user_id: int
    external_id: str
    context_id: str
    role: str
    issued_at: datetime
    expires_at: datetime


class SessionManager:
    """Issues and verifies the HS256 session tokens handed to the client."""

    _INVALID = INVALID_SESSION_MESSAGE

    def __init__(
        self,
        secret: str,
        max_age_seconds: int = 86400,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise LTIConfigurationError("a session secret is required")
        if max_age_seconds <= 0:
            raise LTIConfigurationError("the session max age must be positive")
        self._secret = secret
        self._max_age = max_age_seconds
        self._clock = clock

    @property
    def max_age(self) -> int:
        return self._max_age

    def create_token(self, user_id: int, external_id: str, context_id: str, role: str) -> str:
        now = int(self._clock())
        payload = {
            "user_id": user_id,
            "external_id": external_id,
            "context_id": context_id or "",
            "role": role,
            "iat": now,
            "nbf": now,
            "exp": now + self._max_age,
        }
        return jwt.encode(payload, self._secret, algorithm=SESSION_ALGORITHM)

    def validate_token(self, token: str) -> SessionClaims:
        if not token:
            raise SessionError(self._INVALID)
        try:
            # pinning the algorithm list rejects "none", RS256 and other HMAC sizes
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[SESSION_ALGORITHM],
                options={"require": ["exp", "iat", "user_id", "external_id", "role"]},
            )
        except PyJWTError as exc:
            logger.debug("Rejected session token: %s", exc)
            raise SessionError(self._INVALID) from exc

        user_id = payload.get("user_id")
        external_id = payload.get("external_id")
        context_id = payload.get("context_id") or ""
        role = payload.get("role")
        if isinstance(user_id, bool) or not isinstance(user_id, int):
            raise SessionError(self._INVALID)
        if not isinstance(external_id, str) or not isinstance(context_id, str):
            raise SessionError(self._INVALID)
        if role not in SESSION_ROLES:
            raise SessionError(self._INVALID)
        return SessionClaims(
            user_id=user_id,
            external_id=external_id,
            context_id=context_id,
            role=role,
            issued_at=datetime.fromtimestamp(payload["iat"], timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], timezone.utc),
        )


# ----------------------------------------------------------------------
# login / launch orchestration
# ----------------------------------------------------------------------


@dataclass(slots=True)
class LoginRedirect:
    url: str
    state: str
    nonce: str


@dataclass(slots=True)
class LaunchResult:
    session_token: str
    redirect_url: str
    user: User
    role: str
    claims: LTIClaims
    platform: Platform


class LTIService:
    """Aggregates the stores and validators driving the LTI 1.3 handshake."""

    def __init__(
        self,
        *,
        store: IdentityStore,
        key_manager: LTIKeyManager,
        session_manager: SessionManager,
        state_store: LTIStateStore | None = None,
        validator: LTITokenValidator | None = None,
        launch_url: str | None = None,
        frontend_url: str = "/",
    ) -> None:
        self.store = store
        self.key_manager = key_manager
        self.session_manager = session_manager
        self.state_store = state_store if state_store is not None else LTIStateStore()
        self.validator = validator if validator is not None else LTITokenValidator()
        self.launch_url = launch_url
        self.frontend_url = frontend_url or "/"

    @classmethod
    def from_settings(cls, settings: Settings) -> "LTIService":
        try:
            store = IdentityStore(settings.storage_path)
            if settings.platform is not None:
                store.upsert_platform(settings.platform.model_dump())
        except IdentityStoreError as exc:
            raise LTIConfigurationError(str(exc)) from exc

        if settings.private_key_pem:
            key_manager = LTIKeyManager.from_pem(settings.private_key_pem, settings.key_id)
        else:
            key_manager = LTIKeyManager.generate()

        return cls(
            store=store,
            key_manager=key_manager,
            session_manager=SessionManager(settings.session_secret, settings.session_max_age),
            state_store=LTIStateStore(settings.state_ttl, sweep_interval=settings.state_sweep_interval),
            validator=LTITokenValidator(timeout=settings.jwks_timeout),
            launch_url=settings.launch_url,
            frontend_url=settings.frontend_url,
        )

    def start(self) -> None:
        self.state_store.start_sweeper()

    def shutdown(self) -> None:
        self.state_store.stop_sweeper(timeout=1.0)

    def jwks_document(self) -> dict[str, Any]:
        return self.key_manager.jwks_document()

    def _reject(
        self,
        stage: LaunchStage,
        error: LTIError,
        detail: str | None = None,
        *,
        exc_info: bool = False,
    ) -> LTIError:
        error.stage = stage
        logger.warning(
            "LTI %s rejected (%s): %s%s",
            stage.value,
            type(error).__name__,
            error,
            f" [{detail}]" if detail else "",
            exc_info=exc_info,
        )
        return error

    def _redirect_target(self, stored_target: str | None, claims: LTIClaims) -> str:
        """Pick the post-launch URL, only trusting the login-leg target on a known origin."""

        if not stored_target:
            return self.frontend_url
        if stored_target.startswith("/") and not stored_target.startswith(("//", "/\\")):
            return stored_target
        trusted = {
            origin
            for origin in (
                _origin(claims.target_link_uri),
                _origin(self.frontend_url),
                _origin(self.launch_url),
            )
            if origin is not None
        }
        if _origin(stored_target) in trusted:
            return stored_target
        logger.warning("Ignoring post-launch target on untrusted origin %s", urlsplit(stored_target).netloc)
        return self.frontend_url

    def initiate_login(
        self,
        *,
        issuer: str | None,
        login_hint: str | None,
        target_link_uri: str | None,
        redirect_uri: str,
        client_id: str | None = None,
        message_hint: str | None = None,
    ) -> LoginRedirect:
        """Validate a 3rd-party initiated login and build the OIDC auth redirect."""

        stage = LaunchStage.LOGIN_REQUESTED
        if not issuer:
            raise self._reject(stage, LTIRequestError("missing iss parameter"))
        if not login_hint:
            raise self._reject(stage, LTIRequestError("missing login_hint parameter"))
        if not target_link_uri:
            raise self._reject(stage, LTIRequestError("missing target_link_uri parameter"))

        try:
            platform = self.store.find_platform_by_issuer(issuer)
        except PlatformNotFoundError:
            raise self._reject(
                stage, LTIPlatformError("unknown platform issuer"), f"issuer={issuer}"
            ) from None
        if client_id and client_id != platform.client_id:
            raise self._reject(
                stage,
                LTIPlatformError("client_id mismatch"),
                f"issuer={issuer} client_id={client_id} registered={platform.client_id}",
            )

        state = self.state_store.generate_state()
        nonce = self.state_store.generate_nonce()
        self.state_store.store(
            state,
            StateData(nonce=nonce, target_link_uri=target_link_uri, client_id=platform.client_id),
        )

        params = {
            "scope": "openid",
            "response_type": "id_token",
            "client_id": platform.client_id,
            "redirect_uri": redirect_uri,
            "login_hint": login_hint,
            "state": state,
            "response_mode": "form_post",
            "nonce": nonce,
            "prompt": "none",
        }
        if message_hint:
            params["lti_message_hint"] = message_hint

        parts = urlsplit(platform.authorization_endpoint)
        query = dict(parse_qsl(parts.query, keep_blank_values=True))
        query.update(params)
        url = urlunsplit(parts._replace(query=urlencode(query)))
        logger.info("LTI login for %s redirected to %s", platform.issuer, parts.netloc)
        return LoginRedirect(url=url, state=state, nonce=nonce)

    async def complete_launch(self, *, id_token: str | None, state: str | None) -> LaunchResult:
        """Validate the launch leg and issue the session, the last step on success."""

        stage = LaunchStage.LAUNCH_RECEIVED
        if not id_token:
            raise self._reject(stage, LTIRequestError("missing id_token"))
        if not state:
            raise self._reject(stage, LTIRequestError("missing state"))

        state_data = self.state_store.get_and_consume(state)
        if state_data is None:
            raise self._reject(stage, LTIStateError("invalid or expired state"))

        try:
            platform = self.store.find_platform_by_client_id(state_data.client_id)
        except PlatformNotFoundError:
            raise self._reject(
                stage, LTIPlatformError("platform not found"), f"client_id={state_data.client_id}"
            ) from None

        try:
            claims = await self.validator.validate(id_token, platform, state_data.nonce)
        except LTITokenValidationError as exc:
            raise self._reject(stage, LTITokenValidationError(f"token validation failed: {exc}")) from exc

        try:
            user, created = self.store.find_or_create_user(
                claims.subject,
                platform.issuer,
                display_name=claims.name,
                email=claims.email,
            )
        except IdentityStoreError as exc:
            raise self._reject(
                stage,
                LTIUserError("failed to process user"),
                f"subject={claims.subject} issuer={platform.issuer}",
                exc_info=True,
            ) from exc

        role = claims.role
        try:
            token = self.session_manager.create_token(user.id, claims.subject, claims.context_id, role)
        except PyJWTError as exc:
            raise self._reject(
                stage, LTIInternalError("failed to create session"), f"user={user.id}", exc_info=True
            ) from exc
        # a failure above leaves no session behind; from here the launch is established

        logger.info(
            "LTI %s for user %s (%s, %s) from %s%s",
            LaunchStage.SESSION_ESTABLISHED.value,
            user.id,
            role,
            claims.message_type,
            platform.issuer,
            " [new user]" if created else "",
        )
        return LaunchResult(
            session_token=token,
            redirect_url=self._redirect_target(state_data.target_link_uri, claims),
            user=user,
            role=role,
            claims=claims,
            platform=platform,
        )


_lti_service: LTIService | None = None
_lti_error: Exception | None = None
_lti_lock = threading.Lock()


def get_lti_service() -> LTIService:
    global _lti_service, _lti_error
    with _lti_lock:
        if _lti_service is None:
            settings = Settings.from_env()
            for warning in settings.warnings():
                logger.warning("Configuration: %s", warning)
            try:
                service = LTIService.from_settings(settings)
            except Exception as exc:  # pragma: no cover - configuration errors only
                _lti_error = exc
                raise
            service.start()
            _lti_service = service
            _lti_error = None
    return _lti_service


def get_lti_boot_error() -> Exception | None:
    return _lti_error


def shutdown_lti_service() -> None:
    global _lti_service
    with _lti_lock:
        service, _lti_service = _lti_service, None
    if service is not None:
        service.shutdown()


__all__ = [
    "DEEP_LINKING_REQUEST",
    "INSTRUCTOR_ROLES",
    "INVALID_SESSION_MESSAGE",
    "LEARNER_ROLES",
    "LTIClaims",
    "LTIConfigurationError",
    "LTIError",
    "LTIInternalError",
    "LTIKeyManager",
    "LTIPlatformError",
    "LTIRequestError",
    "LTIService",
    "LTIStateError",
    "LTIStateStore",
    "LTITokenValidationError",
    "LTITokenValidator",
    "LTIUserError",
    "LaunchResult",
    "LaunchStage",
    "LoginRedirect",
    "RESOURCE_LINK_REQUEST",
    "ROLE_INSTRUCTOR",
    "ROLE_LEARNER",
    "SessionClaims",
    "SessionError",
    "SessionManager",
    "StateData",
    "base64url_uint",
    "get_lti_boot_error",
    "get_lti_service",
    "shutdown_lti_service",
]
