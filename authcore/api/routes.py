from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Request, Response

from authcore.api.schemas import (
    AccountDeleteRequest,
    AdminLoginRequest,
    CsrfResponse,
    Envelope,
    LoginResponse,
    OtpRequest,
    OtpRequestResponse,
    OtpVerifyRequest,
    RefreshResponse,
    SmtpConfigRequest,
    SmtpConfigResponse,
    SmtpConfigUpdateRequest,
)
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.auth import AuthContext, IssuedSession
from authcore.service.csrf import CsrfGuard
from authcore.service.runtime import get_runtime
from authcore.storage.models import ROLE_ADMIN, ROLE_USER, SmtpConfig

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Request helpers
# =============================================================================


def _client_address(request: Request, settings: Settings) -> str:
    """Source address for throttling and audit; proxy headers only when trusted."""
    if settings.trust_proxy_headers:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _csrf_pair(request: Request, settings: Settings) -> tuple[Optional[str], Optional[str]]:
    return (
        request.cookies.get(settings.csrf_cookie_name),
        request.headers.get(settings.csrf_header_name),
    )


def _cookie_policy(settings: Settings) -> dict:
    secure = settings.cookie_secure_effective
    policy = {"path": "/", "secure": secure, "samesite": "strict" if secure else "lax"}
    if settings.cookie_domain:
        policy["domain"] = settings.cookie_domain
    return policy


def _set_refresh_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        token,
        httponly=True,
        max_age=settings.refresh_token_ttl_days * 86400,
        **_cookie_policy(settings),
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name, httponly=True, **_cookie_policy(settings)
    )


def _login_payload(issued: IssuedSession) -> dict:
    return LoginResponse(
        access_token=issued.access_token,
        session_id=issued.session_id,
        subject_id=issued.subject_id,
        role=issued.role,
    ).model_dump()


def _smtp_payload(config: SmtpConfig) -> dict:
    return SmtpConfigResponse(
        host=config.host,
        port=config.port,
        username=config.username,
        password_set=bool(config.password),
        updated_at=config.updated_at,
    ).model_dump(mode="json")


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.authenticate(authorization, required_role=ROLE_ADMIN)


# =============================================================================
# CSRF seed
# =============================================================================


@router.get("/csrf", response_model=Envelope, tags=["auth"])
async def issue_csrf(response: Response):
    settings = get_runtime().settings
    token = CsrfGuard.issue_token()
    # Readable by script so the client can echo it in the header
    response.set_cookie(
        settings.csrf_cookie_name,
        token,
        httponly=False,
        max_age=settings.csrf_cookie_max_age_days * 86400,
        **_cookie_policy(settings),
    )
    return Envelope(status="ok", data=CsrfResponse(csrf_token=token).model_dump())


# =============================================================================
# Admin auth
# =============================================================================


@router.post("/admin/auth/login", response_model=Envelope, tags=["admin-auth"])
async def admin_login(
    body: AdminLoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    issued = await runtime.auth.admin_login(
        body.email,
        body.password,
        source_address=_client_address(request, runtime.settings),
        user_agent=user_agent,
    )
    _set_refresh_cookie(response, issued.refresh_token, runtime.settings)
    return Envelope(status="ok", data=_login_payload(issued))


async def _refresh(
    request: Request, response: Response, user_agent: Optional[str], expected_role: str
) -> Envelope:
    runtime = get_runtime()
    settings = runtime.settings
    csrf_cookie, csrf_header = _csrf_pair(request, settings)
    issued = await runtime.auth.refresh(
        request.cookies.get(settings.refresh_cookie_name),
        csrf_cookie=csrf_cookie,
        csrf_header=csrf_header,
        expected_role=expected_role,
        user_agent=user_agent,
        source_address=_client_address(request, settings),
    )
    _set_refresh_cookie(response, issued.refresh_token, settings)
    return Envelope(
        status="ok",
        data=RefreshResponse(
            access_token=issued.access_token, session_id=issued.session_id
        ).model_dump(),
    )


async def _logout(request: Request, response: Response) -> Envelope:
    runtime = get_runtime()
    settings = runtime.settings
    csrf_cookie, csrf_header = _csrf_pair(request, settings)
    await runtime.auth.logout(
        request.cookies.get(settings.refresh_cookie_name),
        csrf_cookie=csrf_cookie,
        csrf_header=csrf_header,
    )
    _clear_refresh_cookie(response, settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/admin/auth/refresh", response_model=Envelope, tags=["admin-auth"])
async def admin_refresh(
    request: Request, response: Response, user_agent: Optional[str] = Header(None)
):
    return await _refresh(request, response, user_agent, ROLE_ADMIN)


@router.post("/admin/auth/logout", response_model=Envelope, tags=["admin-auth"])
async def admin_logout(request: Request, response: Response):
    return await _logout(request, response)


# =============================================================================
# User auth
# =============================================================================


@router.post("/auth/otp/request", response_model=Envelope, tags=["auth"])
async def request_otp(body: OtpRequest, request: Request):
    runtime = get_runtime()
    await runtime.auth.request_otp(
        body.email, source_address=_client_address(request, runtime.settings)
    )
    return Envelope(status="ok", data=OtpRequestResponse().model_dump())


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_otp(
    body: OtpVerifyRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    runtime = get_runtime()
    issued = await runtime.auth.verify_otp(
        body.email,
        body.otp,
        source_address=_client_address(request, runtime.settings),
        user_agent=user_agent,
    )
    _set_refresh_cookie(response, issued.refresh_token, runtime.settings)
    return Envelope(status="ok", data=_login_payload(issued))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def user_refresh(
    request: Request, response: Response, user_agent: Optional[str] = Header(None)
):
    return await _refresh(request, response, user_agent, ROLE_USER)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def user_logout(request: Request, response: Response):
    return await _logout(request, response)


@router.delete("/auth/account", response_model=Envelope, tags=["auth"])
async def delete_account(
    request: Request,
    response: Response,
    body: Optional[AccountDeleteRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    settings = runtime.settings
    csrf_cookie, csrf_header = _csrf_pair(request, settings)
    subject_id = await runtime.auth.delete_account(
        authorization,
        csrf_cookie=csrf_cookie,
        csrf_header=csrf_header,
        email=body.email if body else None,
    )
    _clear_refresh_cookie(response, settings)
    return Envelope(status="ok", data={"deleted": True, "subject_id": subject_id})


# =============================================================================
# SMTP record (admin)
# =============================================================================


@router.get("/admin/smtp", response_model=Envelope, tags=["admin-smtp"])
async def get_smtp_config(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    return Envelope(status="ok", data=_smtp_payload(runtime.auth.get_smtp_config()))


@router.post("/admin/smtp", response_model=Envelope, status_code=201, tags=["admin-smtp"])
async def create_smtp_config(
    body: SmtpConfigRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    saved = await runtime.auth.create_smtp_config(
        body.host, body.port, body.username, body.password
    )
    logger.info("smtp_config_created_by_admin", subject_id=principal.subject_id)
    return Envelope(status="ok", data=_smtp_payload(saved))


@router.put("/admin/smtp", response_model=Envelope, tags=["admin-smtp"])
async def update_smtp_config(
    body: SmtpConfigUpdateRequest, principal: AuthContext = Depends(get_admin_user)
):
    runtime = get_runtime()
    saved = await runtime.auth.update_smtp_config(
        host=body.host, port=body.port, username=body.username, password=body.password
    )
    logger.info("smtp_config_updated_by_admin", subject_id=principal.subject_id)
    return Envelope(status="ok", data=_smtp_payload(saved))


@router.delete("/admin/smtp", response_model=Envelope, tags=["admin-smtp"])
async def delete_smtp_config(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    runtime.auth.delete_smtp_config()
    logger.info("smtp_config_deleted_by_admin", subject_id=principal.subject_id)
    return Envelope(status="ok", data={"deleted": True})
