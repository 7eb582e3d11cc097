from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Optional

from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"

_RESERVED_CLAIMS = frozenset({"sub", "role", "sid", "iat", "exp", "typ"})


def fingerprint(token: str) -> str:
    """SHA-256 hex digest used to look up a refresh token without storing it."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenIssuer:
    """Mints and checks HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets and carry a
    ``typ`` claim, so neither can stand in for the other.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time) -> None:
        self.settings = settings
        self._clock = clock

    def _secret(self, token_type: str) -> bytes:
        secret = (
            self.settings.jwt_access_secret
            if token_type == TOKEN_TYPE_ACCESS
            else self.settings.jwt_refresh_secret
        )
        if not secret:
            raise RuntimeError(f"signing secret for {token_type} tokens is not configured")
        return secret.encode()

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm so a forged header cannot pick a weaker one
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self._secret(token_type),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )
        # Compare bytes; str compare_digest raises on non-ASCII input
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or payload.get("typ") != token_type:
            return None
        try:
            exp_ts = float(payload.get("exp"))
            iat_ts = float(payload.get("iat"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock():
            return None
        if token_type == TOKEN_TYPE_ACCESS:
            deny_before_ms = self.settings.access_deny_before
            if deny_before_ms and iat_ts * 1000 < deny_before_ms:
                logger.info("access_token_denied_by_cutoff", iat=int(iat_ts))
                return None
        return payload

    def issue_access(
        self, subject_id: str, role: str, extra_claims: Optional[dict[str, Any]] = None
    ) -> str:
        now = int(self._clock())
        payload: dict[str, Any] = {
            key: value
            for key, value in (extra_claims or {}).items()
            if key not in _RESERVED_CLAIMS
        }
        payload.update(
            {
                "sub": subject_id,
                "role": role,
                "iat": now,
                "exp": now + self.settings.access_token_ttl_minutes * 60,
                "typ": TOKEN_TYPE_ACCESS,
            }
        )
        return self._encode_jwt(payload, TOKEN_TYPE_ACCESS)

    def verify_access(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token, TOKEN_TYPE_ACCESS)
        if payload is None:
            raise AuthenticationError("Unauthorized")
        return payload

    def issue_refresh(self, subject_id: str, role: str, session_id: str) -> str:
        now = int(self._clock())
        payload = {
            "sub": subject_id,
            "role": role,
            "sid": session_id,
            "iat": now,
            "exp": now + self.settings.refresh_token_ttl_days * 86400,
            "typ": TOKEN_TYPE_REFRESH,
        }
        return self._encode_jwt(payload, TOKEN_TYPE_REFRESH)

    def verify_refresh(self, token: str) -> dict[str, Any]:
        payload = self._decode_jwt(token, TOKEN_TYPE_REFRESH)
        if payload is None or not payload.get("sid"):
            raise AuthenticationError("Unauthorized")
        return payload

    @staticmethod
    def fingerprint(token: str) -> str:
        return fingerprint(token)
