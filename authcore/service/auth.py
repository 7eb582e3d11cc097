from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.credentials import CredentialVerifier
from authcore.service.csrf import CsrfGuard
from authcore.service.email import EmailService
from authcore.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from authcore.service.otp import OtpEngine, is_valid_email, normalize_email
from authcore.service.sessions import SessionService
from authcore.service.throttle import LoginThrottle
from authcore.service.tokens import TokenIssuer
from authcore.storage.models import ROLE_ADMIN, ROLE_USER, SmtpConfig

logger = get_logger(__name__)


@dataclass
class AuthContext:
    subject_id: str
    role: str
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass
class IssuedSession:
    """Tokens handed back after a login or a refresh."""

    access_token: str
    refresh_token: str
    session_id: str
    subject_id: str
    role: str


class AuthService:
    """Admin login, OTP login, refresh, logout and account deletion.

    Identity is established by the credential verifier (admin) or the OTP
    engine (users); the token issuer and session service then mint the pair.
    Every cookie-authenticated mutation passes the CSRF guard first.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        mailer: Optional[EmailService] = None,
        tokens: Optional[TokenIssuer] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.tokens = tokens or TokenIssuer(settings)
        self.sessions = SessionService(store, self.tokens)
        self.csrf = CsrfGuard()
        self.credentials = CredentialVerifier(settings)
        self.throttle = LoginThrottle(cache, settings)
        self.mailer = mailer or EmailService(settings, store)
        self.otp = OtpEngine(cache, self.mailer, store, settings)

    def _issue(
        self,
        subject_id: str,
        role: str,
        *,
        user_agent: Optional[str],
        source_address: Optional[str],
    ) -> IssuedSession:
        access_token = self.tokens.issue_access(subject_id, role)
        session, refresh_token = self.sessions.create(
            subject_id, role, user_agent, source_address
        )
        return IssuedSession(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session.id,
            subject_id=subject_id,
            role=role,
        )

    # =========================================================================
    # Login flows
    # =========================================================================

    async def admin_login(
        self,
        email: str,
        password: str,
        *,
        source_address: str,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        if await self.throttle.is_locked(source_address):
            logger.warning("admin_login_rejected_locked", source_address=source_address)
            raise RateLimitedError("Too many attempts. Try later.")

        if not self.credentials.verify(email, password):
            await self.throttle.record_failure(source_address)
            logger.warning("admin_login_failed", source_address=source_address)
            raise AuthenticationError("Invalid credentials")

        await self.throttle.record_success(source_address)
        admin_email = normalize_email(self.settings.admin_email or email)
        profile = self.store.upsert_profile(admin_email, ROLE_ADMIN)
        issued = self._issue(
            profile.id, ROLE_ADMIN, user_agent=user_agent, source_address=source_address
        )
        logger.info("admin_login_success", subject_id=profile.id, session_id=issued.session_id)
        return issued

    async def request_otp(self, email: str, *, source_address: Optional[str]) -> None:
        await self.otp.request(email, source_address)

    async def verify_otp(
        self,
        email: str,
        code: str,
        *,
        source_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> IssuedSession:
        profile = await self.otp.verify(email, code)
        return self._issue(
            profile.id, ROLE_USER, user_agent=user_agent, source_address=source_address
        )

    # =========================================================================
    # Cookie-authenticated flows
    # =========================================================================

    async def refresh(
        self,
        refresh_token: Optional[str],
        *,
        csrf_cookie: Optional[str],
        csrf_header: Optional[str],
        expected_role: str,
        user_agent: Optional[str] = None,
        source_address: Optional[str] = None,
    ) -> IssuedSession:
        self.csrf.enforce(csrf_cookie, csrf_header)
        if not refresh_token:
            raise AuthenticationError("Unauthorized")
        session, new_refresh, claims = self.sessions.rotate(
            refresh_token,
            user_agent=user_agent,
            source_address=source_address,
            expected_role=expected_role,
        )
        access_token = self.tokens.issue_access(session.subject_id, session.role)
        return IssuedSession(
            access_token=access_token,
            refresh_token=new_refresh,
            session_id=session.id,
            subject_id=session.subject_id,
            role=session.role,
        )

    async def logout(
        self,
        refresh_token: Optional[str],
        *,
        csrf_cookie: Optional[str],
        csrf_header: Optional[str],
    ) -> bool:
        """Revoke the session behind the cookie; unknown cookies are not an error."""
        self.csrf.enforce(csrf_cookie, csrf_header)
        session_id = self.sessions.resolve_cookie(refresh_token)
        if session_id is None:
            return False
        return self.sessions.revoke(session_id)

    async def delete_account(
        self,
        authorization: Optional[str],
        *,
        csrf_cookie: Optional[str],
        csrf_header: Optional[str],
        email: Optional[str] = None,
    ) -> str:
        self.csrf.enforce(csrf_cookie, csrf_header)
        ctx = self.authenticate(authorization, required_role=ROLE_USER)

        profile = self.store.get_profile(ctx.subject_id)
        if profile is None or profile.role != ROLE_USER:
            raise NotFoundError("User not found")
        # An explicit email may only name the caller's own account
        if email is not None:
            normalized = normalize_email(email)
            if not is_valid_email(normalized):
                raise ValidationError("Invalid input")
            if normalized != profile.email:
                logger.warning("account_delete_foreign_subject", subject_id=ctx.subject_id)
                raise ForbiddenError("Forbidden")

        self.sessions.revoke_all(profile.id, ROLE_USER)
        self.store.delete_profile(profile.id)
        logger.info("account_deleted", subject_id=profile.id)
        return profile.id

    # =========================================================================
    # Bearer authentication
    # =========================================================================

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def authenticate(
        self, authorization: Optional[str], required_role: Optional[str] = None
    ) -> AuthContext:
        token = self._extract_bearer(authorization)
        if token is None:
            raise AuthenticationError("Unauthorized")
        claims = self.tokens.verify_access(token)
        subject_id = claims.get("sub")
        role = claims.get("role")
        if not subject_id or not role:
            raise AuthenticationError("Unauthorized")
        if required_role is not None and role != required_role:
            raise ForbiddenError("Forbidden")
        return AuthContext(subject_id=subject_id, role=role, claims=claims)

    # =========================================================================
    # SMTP record
    # =========================================================================

    def get_smtp_config(self) -> SmtpConfig:
        config = self.store.get_smtp_config()
        if config is None:
            raise NotFoundError("SMTP config not found")
        return config

    async def _verify_and_save(self, candidate: SmtpConfig) -> SmtpConfig:
        try:
            verified = await asyncio.wait_for(
                asyncio.to_thread(self.mailer.verify_config, candidate),
                timeout=self.settings.smtp_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("smtp_verify_timeout", host=candidate.host, port=candidate.port)
            verified = False
        if not verified:
            raise ValidationError("SMTP verification failed")
        return self.store.save_smtp_config(candidate)

    async def create_smtp_config(
        self, host: str, port: int, username: str, password: str
    ) -> SmtpConfig:
        """Verify and store a full SMTP record, replacing any existing one."""
        candidate = SmtpConfig(host=host, port=port, username=username, password=password)
        saved = await self._verify_and_save(candidate)
        logger.info("smtp_config_created", host=host, port=port)
        return saved

    async def update_smtp_config(
        self,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ) -> SmtpConfig:
        """Merge the given fields into the stored record; the merged record is verified."""
        current = self.get_smtp_config()
        if host is None and port is None and username is None and password is None:
            raise ValidationError(
                "Provide at least one field to update (host/port/username/password)"
            )
        candidate = SmtpConfig(
            host=host if host is not None else current.host,
            port=port if port is not None else current.port,
            username=username if username is not None else current.username,
            password=password if password is not None else current.password,
        )
        saved = await self._verify_and_save(candidate)
        logger.info(
            "smtp_config_updated",
            host=saved.host,
            port=saved.port,
            fields=[
                name
                for name, value in (
                    ("host", host),
                    ("port", port),
                    ("username", username),
                    ("password", password),
                )
                if value is not None
            ],
        )
        return saved

    def delete_smtp_config(self) -> None:
        if not self.store.delete_smtp_config():
            raise NotFoundError("SMTP config not found")
        logger.info("smtp_config_deleted")
