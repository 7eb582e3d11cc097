from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

MAX_USER_AGENT_LENGTH = 200

ROLE_ADMIN = "admin"
ROLE_USER = "user"
ROLES = frozenset({ROLE_ADMIN, ROLE_USER})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Profile:
    """Identity row a session binds to; only the fields auth needs."""

    id: str
    email: str
    role: str = ROLE_USER
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Session:
    """One refresh-token lineage step; active while ``revoked_at`` is None."""

    id: str
    subject_id: str
    role: str
    token_fingerprint: str
    created_at: datetime
    rotated_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    source_address: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None

    @classmethod
    def new(
        cls,
        subject_id: str,
        role: str,
        *,
        token_fingerprint: str = "",
        user_agent: str | None = None,
        source_address: str | None = None,
        session_id: str | None = None,
    ) -> "Session":
        return cls(
            id=session_id or str(uuid.uuid4()),
            subject_id=subject_id,
            role=role,
            token_fingerprint=token_fingerprint,
            created_at=utcnow(),
            user_agent=(user_agent or "")[:MAX_USER_AGENT_LENGTH] or None,
            source_address=source_address or None,
        )


@dataclass
class OtpRecord:
    code: str
    expires_at: datetime
    attempts: int = 0


@dataclass
class SmtpConfig:
    host: str
    port: int
    username: str
    password: str
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def implicit_tls(self) -> bool:
        """Port 465 speaks TLS from the first byte; other ports upgrade via STARTTLS."""
        return self.port == 465
