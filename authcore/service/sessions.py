from __future__ import annotations

import uuid
from typing import Any, Optional, Protocol, Tuple

from authcore.logging import get_logger
from authcore.service.errors import AuthenticationError
from authcore.service.tokens import TokenIssuer, fingerprint
from authcore.storage.models import Profile, Session

logger = get_logger(__name__)


class SessionBackend(Protocol):
    def upsert_profile(self, email: str, role: str) -> Profile: ...

    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session_by_fingerprint(self, fingerprint: str) -> Optional[Session]: ...

    def rotate_session(
        self, session_id: str, expected_fingerprint: str, successor: Session
    ) -> bool: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_subject_sessions(self, subject_id: str, role: str) -> int: ...


class SessionService:
    """Refresh-session lifecycle on top of a store backend.

    A session never changes identity: rotation revokes the predecessor and
    inserts a successor with a fresh id, atomically in the backend.
    """

    def __init__(self, store: SessionBackend, tokens: TokenIssuer) -> None:
        self.store = store
        self.tokens = tokens

    def create(
        self,
        subject_id: str,
        role: str,
        user_agent: Optional[str] = None,
        source_address: Optional[str] = None,
    ) -> Tuple[Session, str]:
        session_id = str(uuid.uuid4())
        refresh_token = self.tokens.issue_refresh(subject_id, role, session_id)
        session = Session.new(
            subject_id,
            role,
            token_fingerprint=fingerprint(refresh_token),
            user_agent=user_agent,
            source_address=source_address,
            session_id=session_id,
        )
        self.store.insert_session(session)
        logger.info("session_created", session_id=session.id, role=role)
        return session, refresh_token

    def rotate(
        self,
        old_refresh_token: str,
        user_agent: Optional[str] = None,
        source_address: Optional[str] = None,
        expected_role: Optional[str] = None,
    ) -> Tuple[Session, str, dict[str, Any]]:
        claims = self.tokens.verify_refresh(old_refresh_token)
        subject_id = claims.get("sub")
        role = claims.get("role")
        if expected_role is not None and role != expected_role:
            logger.warning("refresh_role_mismatch", expected=expected_role, actual=role)
            raise AuthenticationError("Unauthorized")

        session = self.store.get_session(claims["sid"])
        if session is None:
            logger.warning("refresh_session_missing", session_id=claims["sid"])
            raise AuthenticationError("Unauthorized")
        if not session.is_active:
            logger.warning("refresh_session_inactive", session_id=session.id)
            raise AuthenticationError("Unauthorized")
        if session.subject_id != subject_id or session.role != role:
            logger.warning("refresh_subject_mismatch", session_id=session.id)
            raise AuthenticationError("Unauthorized")
        presented = fingerprint(old_refresh_token)
        if session.token_fingerprint != presented:
            logger.error("refresh_fingerprint_mismatch", session_id=session.id)
            raise AuthenticationError("Unauthorized")

        successor_id = str(uuid.uuid4())
        refresh_token = self.tokens.issue_refresh(subject_id, role, successor_id)
        successor = Session.new(
            subject_id,
            role,
            token_fingerprint=fingerprint(refresh_token),
            user_agent=user_agent,
            source_address=source_address,
            session_id=successor_id,
        )
        if not self.store.rotate_session(session.id, presented, successor):
            logger.warning("refresh_rotation_conflict", session_id=session.id)
            raise AuthenticationError("Unauthorized")
        logger.info("session_rotated", previous_id=session.id, session_id=successor.id)
        return successor, refresh_token, claims

    def revoke(self, session_id: str) -> bool:
        revoked = self.store.revoke_session(session_id)
        if revoked:
            logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all(self, subject_id: str, role: str) -> int:
        count = self.store.revoke_subject_sessions(subject_id, role)
        logger.info("sessions_revoked_all", subject_id=subject_id, role=role, count=count)
        return count

    def find_active_by_fingerprint(self, token_fingerprint: str) -> Optional[str]:
        session = self.store.find_active_session_by_fingerprint(token_fingerprint)
        return session.id if session else None

    def resolve_cookie(self, refresh_token: Optional[str]) -> Optional[str]:
        if not refresh_token:
            return None
        return self.find_active_by_fingerprint(fingerprint(refresh_token))
