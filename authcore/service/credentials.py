from __future__ import annotations

import hmac

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authcore.config import Settings
from authcore.logging import get_logger

logger = get_logger(__name__)

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_ARGON2_PREFIX = "$argon2"

# Verified when no admin secret is configured so failures take the same path
_UNSET_SECRET = "\x00unset"


def secret_scheme(secret: str) -> str:
    if secret.startswith(_BCRYPT_PREFIXES):
        return "bcrypt"
    if secret.startswith(_ARGON2_PREFIX):
        return "argon2"
    return "plaintext"


def hash_secret(password: str, scheme: str = "argon2") -> str:
    """Hash ``password`` for use as ADMIN_PASSWORD."""
    if scheme == "bcrypt":
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
    if scheme == "argon2":
        return PasswordHasher(type=Type.ID).hash(password)
    raise ValueError(f"unsupported hash scheme: {scheme}")


class CredentialVerifier:
    """Checks a submitted email/password pair against the configured admin."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _password_matches(self, secret: str, password: str) -> bool:
        scheme = secret_scheme(secret)
        if scheme == "bcrypt":
            try:
                return bcrypt.checkpw(password.encode("utf-8"), secret.encode("utf-8"))
            except ValueError:
                logger.error("admin_secret_invalid_hash", scheme=scheme)
                return False
        if scheme == "argon2":
            try:
                return self._pwd_hasher.verify(secret, password)
            except VerifyMismatchError:
                return False
            except (InvalidHash, VerificationError):
                logger.error("admin_secret_invalid_hash", scheme=scheme)
                return False
        return hmac.compare_digest(secret.encode("utf-8"), password.encode("utf-8"))

    def verify(self, email: str, password: str) -> bool:
        expected_email = (self.settings.admin_email or "").strip().lower()
        submitted_email = (email or "").strip().lower()
        email_ok = bool(expected_email) and hmac.compare_digest(
            expected_email.encode("utf-8"), submitted_email.encode("utf-8")
        )
        # Evaluate the password even when the email is wrong
        secret = self.settings.admin_password or _UNSET_SECRET
        password_ok = self._password_matches(secret, password or "")
        if not self.settings.admin_password:
            logger.error("admin_credentials_not_configured")
            return False
        return email_ok and password_ok
