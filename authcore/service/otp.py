from __future__ import annotations

import asyncio
import hmac
import re
import secrets
import unicodedata
from typing import Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.email import EmailService
from authcore.service.errors import (
    InvalidOtpError,
    OtpExpiredError,
    ServiceUnavailableError,
    ValidationError,
)
from authcore.storage.models import ROLE_USER, Profile

logger = get_logger(__name__)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

# Zero-width space, joiners and BOM
_ZERO_WIDTH = frozenset("\u200b\u200c\u200d\ufeff")
# U+202A..U+202E and U+2066..U+2069
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_email(value: str) -> str:
    """Trim, lower-case and NFKC-normalize, dropping zero-width and bidi characters."""
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned).strip().lower()


def is_valid_email(normalized: str) -> bool:
    if not 3 <= len(normalized) <= 254:
        return False
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return False
    if not _EMAIL_LOCAL_PART.match(local):
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    return all(len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels)


class OtpEngine:
    """Email one-time passcodes with resend cooldown and per-address quota.

    ``request`` looks the same to the caller whether or not a mail went out;
    the only visible failure is an unavailable mail transport. Records,
    cooldowns and quota counters live in the injected cache so they can be
    shared across instances through Redis.
    """

    def __init__(self, cache, mailer: EmailService, store, settings: Settings) -> None:
        self.cache = cache
        self.mailer = mailer
        self.store = store
        self.settings = settings
        self._code_pattern = re.compile(rf"[0-9]{{{settings.otp_length}}}")

    def _generate_code(self) -> str:
        length = self.settings.otp_length
        return str(secrets.randbelow(10**length)).zfill(length)

    async def _deliver(self, email: str, code: str) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.mailer.send_otp, email, code, self.settings.otp_ttl_seconds
                ),
                timeout=self.settings.smtp_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error(
                "otp_mail_timeout", timeout_seconds=self.settings.smtp_timeout_seconds
            )
            return False
        except Exception:
            logger.exception("otp_mail_failed")
            return False

    async def request(self, email: str, source_address: Optional[str]) -> None:
        normalized = normalize_email(email or "")
        if not is_valid_email(normalized):
            logger.info("otp_request_invalid_email")
            return
        if not self.mailer.is_configured:
            logger.error("otp_smtp_not_configured")
            raise ServiceUnavailableError("SMTP not configured")
        if await self.cache.in_cooldown(normalized):
            logger.info("otp_request_cooldown")
            return

        address = source_address or "unknown"
        allowed = await self.cache.hit_window(
            f"otp:ip:{address}",
            self.settings.otp_hourly_quota,
            self.settings.otp_quota_window_seconds,
        )
        if not allowed:
            logger.warning("otp_quota_exhausted", source_address=address)
            return
        if not await self.cache.claim_cooldown(
            normalized, self.settings.otp_resend_cooldown_seconds
        ):
            logger.info("otp_request_cooldown_race")
            return

        code = self._generate_code()
        await self.cache.otp_put(normalized, code, self.settings.otp_ttl_seconds)
        sent = False
        try:
            sent = await self._deliver(normalized, code)
        finally:
            if not sent:
                await self.cache.otp_consume(normalized, code)
                await self.cache.release_cooldown(normalized)
        if not sent:
            raise ServiceUnavailableError("SMTP temporarily unavailable")
        logger.info("otp_sent", source_address=address)

    async def verify(self, email: str, code: str) -> Profile:
        normalized = normalize_email(email or "")
        if not is_valid_email(normalized) or not isinstance(code, str):
            raise ValidationError("Invalid input")
        if not self._code_pattern.fullmatch(code):
            raise ValidationError("Invalid input")

        stored = await self.cache.otp_attempt(normalized, self.settings.otp_max_attempts)
        if stored is None:
            raise OtpExpiredError("OTP expired/used")
        if not hmac.compare_digest(stored.encode("utf-8"), code.encode("utf-8")):
            logger.info("otp_mismatch")
            raise InvalidOtpError("Invalid OTP")
        if not await self.cache.otp_consume(normalized, code):
            raise OtpExpiredError("OTP expired/used")

        profile = self.store.upsert_profile(normalized, ROLE_USER)
        logger.info("otp_verified", subject_id=profile.id)
        return profile
