from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator, Literal
from urllib.parse import urlparse

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel, ConfigDict, Field

from .identity_store import IdentityStoreError, User, UserNotFoundError
from .lti import (
    INVALID_SESSION_MESSAGE,
    ROLE_INSTRUCTOR,
    ROLE_LEARNER,
    LTIConfigurationError,
    LTIError,
    LTIRequestError,
    LTIService,
    SessionClaims,
    SessionError,
    get_lti_service,
    shutdown_lti_service,
)
from .settings import Settings


logger = logging.getLogger(__name__)

DEMO_ISSUER = "demo.local"
DEMO_EXTERNAL_ID = "demo-user-001"
DEMO_CONTEXT_ID = "demo-course-001"
DEMO_DISPLAY_NAME = "Demo Explorer"


class AdminAuthError(LTIError):
    status_code = 401


class HealthResponse(BaseModel):
    status: str


class UserPayload(BaseModel):
    id: int
    external_id: str = Field(serialization_alias="externalId")
    issuer: str
    display_name: str | None = Field(default=None, serialization_alias="displayName")
    email: str | None = None


class MeResponse(BaseModel):
    user: UserPayload
    role: str
    context_id: str = Field(serialization_alias="contextId")
    expires_at: str = Field(serialization_alias="expiresAt")


class DemoLoginRequest(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    role: Literal["instructor", "learner"] | None = None


class PlatformRegistration(BaseModel):
    issuer: str
    client_id: str = Field(min_length=1)
    deployment_id: str | None = None
    jwks_endpoint: str
    authorization_endpoint: str
    token_endpoint: str | None = None
    name: str | None = None

    model_config = ConfigDict(extra="forbid")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


_settings = get_settings()


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    shutdown_lti_service()


app = FastAPI(title="Globe Expedition Journal Backend", version="1.0.0", lifespan=_lifespan)
api_router = APIRouter(prefix="/api/v1", tags=["api"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])

allow_origins: list[str] = []
for origin in _settings.frontend_origins:
    allow_origins.append(origin)
    parsed = urlparse(origin)
    if parsed.scheme and parsed.hostname in {"localhost", "127.0.0.1"}:
        swap_host = "127.0.0.1" if parsed.hostname == "localhost" else "localhost"
        alternate = parsed._replace(netloc=f"{swap_host}:{parsed.port}" if parsed.port else swap_host).geturl()
        allow_origins.append(alternate)

# remove duplicates while preserving order
seen: set[str] = set()
allow_origins = [origin for origin in allow_origins if not (origin in seen or seen.add(origin))]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LTIError)
async def _lti_error_handler(request: Request, exc: LTIError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(IdentityStoreError)
async def _identity_store_error_handler(request: Request, exc: IdentityStoreError) -> JSONResponse:
    logger.error("Identity store failure on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": "internal storage error"})


def _resolve_lti_service() -> LTIService:
    try:
        return get_lti_service()
    except LTIConfigurationError:
        raise
    except Exception as exc:  # pragma: no cover - configuration missing in tests
        logger.exception("Unable to initialise the LTI service")
        raise LTIConfigurationError(f"LTI service unavailable: {exc}") from exc


def _request_scheme(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-proto")
    if forwarded:
        return forwarded.split(",")[0].strip().lower()
    return request.url.scheme


def _launch_url(request: Request, service: LTIService) -> str:
    if service.launch_url:
        return service.launch_url
    host = request.headers.get("x-forwarded-host") or request.headers.get("host") or request.url.netloc
    return f"{_request_scheme(request)}://{host.split(',')[0].strip()}/lti/launch"


def _set_session_cookie(
    request: Request,
    response: Response,
    token: str,
    service: LTIService,
    settings: Settings,
) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=service.session_manager.max_age,
        path="/",
        secure=_request_scheme(request) == "https",
        httponly=True,
        samesite="lax",
    )


def _extract_session_token(request: Request, settings: Settings) -> str | None:
    cookie_value = request.cookies.get(settings.session_cookie_name)
    if cookie_value:
        return cookie_value
    header = request.headers.get("authorization")
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if value and scheme.lower() == "bearer":
        return value.strip() or None
    return header.strip() or None


def _require_session(
    request: Request,
    service: LTIService = Depends(_resolve_lti_service),
    settings: Settings = Depends(get_settings),
) -> SessionClaims:
    token = _extract_session_token(request, settings)
    if not token:
        raise SessionError(INVALID_SESSION_MESSAGE)
    return service.session_manager.validate_token(token)


def _require_api_key(request: Request, settings: Settings = Depends(get_settings)) -> None:
    if not settings.api_auth_token:
        raise LTIConfigurationError("platform administration is disabled (API_AUTH_TOKEN unset)")
    if request.headers.get("x-api-key") != settings.api_auth_token:
        raise AdminAuthError("invalid or missing API key")


def _user_payload(user: User) -> UserPayload:
    return UserPayload(
        id=user.id,
        external_id=user.external_id,
        issuer=user.issuer,
        display_name=user.display_name,
        email=user.email,
    )


@api_router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(status="healthy")


# LTI 1.3 Endpoints


@app.get("/.well-known/jwks.json")
def jwks_endpoint(service: LTIService = Depends(_resolve_lti_service)) -> JSONResponse:
    """Expose the tool public key for platforms verifying our signatures."""
    return JSONResponse(
        content=service.jwks_document(),
        headers={"Cache-Control": "public, max-age=3600"},
    )


@app.get("/lti/login")
@app.post("/lti/login")
async def lti_initiate_login(
    request: Request,
    service: LTIService = Depends(_resolve_lti_service),
) -> RedirectResponse:
    """Handle the OIDC third-party initiated login sent by the platform."""
    params: dict[str, Any] = {}
    if request.method == "POST":
        form_data = await request.form()
        params.update({key: value for key, value in form_data.items() if isinstance(value, str)})
    # query parameters take precedence over the form body
    params.update({key: value for key, value in request.query_params.items() if value})

    redirect = service.initiate_login(
        issuer=params.get("iss"),
        login_hint=params.get("login_hint"),
        target_link_uri=params.get("target_link_uri"),
        client_id=params.get("client_id"),
        message_hint=params.get("lti_message_hint"),
        redirect_uri=_launch_url(request, service),
    )
    return RedirectResponse(url=redirect.url, status_code=status.HTTP_302_FOUND)


@app.post("/lti/launch")
async def lti_launch(
    request: Request,
    service: LTIService = Depends(_resolve_lti_service),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Validate the platform id_token and establish the local session."""
    form_data = await request.form()
    id_token = form_data.get("id_token")
    state = form_data.get("state")

    result = await service.complete_launch(
        id_token=id_token if isinstance(id_token, str) else None,
        state=state if isinstance(state, str) else None,
    )
    response = RedirectResponse(url=result.redirect_url, status_code=status.HTTP_302_FOUND)
    _set_session_cookie(request, response, result.session_token, service, settings)
    return response


@api_router.get("/me")
def get_current_user(
    session: SessionClaims = Depends(_require_session),
    service: LTIService = Depends(_resolve_lti_service),
) -> JSONResponse:
    try:
        user = service.store.get_user(session.user_id)
    except UserNotFoundError:
        return JSONResponse(status_code=404, content={"error": "user not found"})
    payload = MeResponse(
        user=_user_payload(user),
        role=session.role,
        context_id=session.context_id,
        expires_at=session.expires_at.isoformat().replace("+00:00", "Z"),
    )
    return JSONResponse(content=payload.model_dump(by_alias=True))


@api_router.post("/logout")
def logout(
    response: Response,
    session: SessionClaims = Depends(_require_session),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    # the token itself stays valid until expiry, only the cookie is dropped
    response.delete_cookie(key=settings.session_cookie_name, path="/", httponly=True, samesite="lax")
    logger.info("User %s logged out", session.user_id)
    return {"ok": True}


@api_router.post("/demo/login")
def demo_login(
    request: Request,
    payload: DemoLoginRequest | None = None,
    service: LTIService = Depends(_resolve_lti_service),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    if not settings.demo_mode:
        return JSONResponse(status_code=404, content={"error": "not found"})

    payload = payload or DemoLoginRequest()
    display_name = (payload.name or "").strip() or DEMO_DISPLAY_NAME
    role = ROLE_INSTRUCTOR if payload.role == ROLE_INSTRUCTOR else ROLE_LEARNER
    user, _ = service.store.find_or_create_user(DEMO_EXTERNAL_ID, DEMO_ISSUER, display_name=display_name)
    token = service.session_manager.create_token(user.id, user.external_id, DEMO_CONTEXT_ID, role)
    logger.info("Demo session issued for user %s (%s)", user.id, role)

    response = JSONResponse(
        content={"user": _user_payload(user).model_dump(by_alias=True), "role": role, "contextId": DEMO_CONTEXT_ID}
    )
    _set_session_cookie(request, response, token, service, settings)
    return response


# Platform registry administration


@admin_router.get("/lti-platforms")
def admin_list_lti_platforms(
    _: None = Depends(_require_api_key),
    service: LTIService = Depends(_resolve_lti_service),
) -> dict[str, Any]:
    platforms = [platform.model_dump(mode="json") for platform in service.store.list_platforms()]
    platforms.sort(key=lambda item: item["issuer"])
    return {"platforms": platforms}


@admin_router.put("/lti-platforms")
def admin_put_lti_platform(
    payload: PlatformRegistration,
    _: None = Depends(_require_api_key),
    service: LTIService = Depends(_resolve_lti_service),
) -> dict[str, Any]:
    try:
        platform = service.store.upsert_platform(payload.model_dump())
    except IdentityStoreError as exc:
        raise LTIRequestError(str(exc)) from exc
    return {"platform": platform.model_dump(mode="json")}


@admin_router.delete("/lti-platforms", status_code=status.HTTP_204_NO_CONTENT)
def admin_delete_lti_platform(
    issuer: str = Query(..., min_length=1),
    _: None = Depends(_require_api_key),
    service: LTIService = Depends(_resolve_lti_service),
) -> Response:
    if not service.store.delete_platform(issuer):
        return JSONResponse(status_code=404, content={"error": "platform not found"})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


app.include_router(api_router)
app.include_router(admin_router)

