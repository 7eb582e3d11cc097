from __future__ import annotations

import hmac
import secrets
from typing import Optional

from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError

logger = get_logger(__name__)

CSRF_TOKEN_BYTES = 24


class CsrfGuard:
    """Double-submit check: the CSRF cookie must be echoed in a request header."""

    def check(self, cookie_value: Optional[str], header_value: Optional[str]) -> bool:
        if not cookie_value or not header_value:
            return False
        return hmac.compare_digest(cookie_value.encode("utf-8"), header_value.encode("utf-8"))

    def enforce(self, cookie_value: Optional[str], header_value: Optional[str]) -> None:
        if self.check(cookie_value, header_value):
            return
        reason = "missing" if not cookie_value or not header_value else "mismatch"
        logger.warning("csrf_rejected", reason=reason)
        raise AuthenticationError("Unauthorized")

    @staticmethod
    def issue_token() -> str:
        return secrets.token_urlsafe(CSRF_TOKEN_BYTES)
