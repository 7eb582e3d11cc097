from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import Profile, Session, SmtpConfig, utcnow


class MemoryStore:
    """In-process store for profiles, sessions and the SMTP record.

    State is mirrored to ``<fs_root>/state/auth_store.json`` after every write
    so a restarted dev server keeps its sessions.
    """

    def __init__(self, fs_root: str = "/tmp/authcore") -> None:
        self.logger = get_logger(__name__)
        self.profiles: Dict[str, Profile] = {}
        self.sessions: Dict[str, Session] = {}
        self.smtp_config: Optional[SmtpConfig] = None
        # RLock for all data operations to ensure thread safety
        # Using RLock to allow nested acquisitions within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # profiles
    def upsert_profile(self, email: str, role: str) -> Profile:
        """Return the profile for (email, role), creating it on first use."""
        with self._data_lock:
            existing = self.get_profile_by_email(email, role)
            if existing:
                return existing
            profile = Profile(id=str(uuid.uuid4()), email=email, role=role)
            self.profiles[profile.id] = profile
            self._persist_state()
            self.logger.info("profile_created", profile_id=profile.id, role=role)
            return profile

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._data_lock:
            return self.profiles.get(profile_id)

    def get_profile_by_email(self, email: str, role: str) -> Optional[Profile]:
        with self._data_lock:
            return next(
                (
                    p
                    for p in self.profiles.values()
                    if p.email == email and p.role == role
                ),
                None,
            )

    def delete_profile(self, profile_id: str) -> bool:
        with self._data_lock:
            removed = self.profiles.pop(profile_id, None)
            if removed is None:
                return False
            self._persist_state()
            return True

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def find_active_session_by_fingerprint(self, fingerprint: str) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if sess.is_active and sess.token_fingerprint == fingerprint:
                    return sess
            return None

    def rotate_session(
        self, session_id: str, expected_fingerprint: str, successor: Session
    ) -> bool:
        """Revoke ``session_id`` and insert ``successor`` as one step.

        Succeeds only while the old record is active and still carries
        ``expected_fingerprint``; concurrent callers see exactly one True.
        """
        with self._data_lock:
            current = self.sessions.get(session_id)
            if (
                current is None
                or not current.is_active
                or current.token_fingerprint != expected_fingerprint
            ):
                return False
            if successor.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": successor.id})
            now = utcnow()
            current.revoked_at = now
            current.rotated_at = now
            self.sessions[successor.id] = successor
            self._persist_state()
            return True

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.revoked_at = utcnow()
            self._persist_state()
            return True

    def revoke_subject_sessions(self, subject_id: str, role: str) -> int:
        with self._data_lock:
            now = utcnow()
            revoked = 0
            for sess in self.sessions.values():
                if sess.subject_id == subject_id and sess.role == role and sess.is_active:
                    sess.revoked_at = now
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    # smtp
    def get_smtp_config(self) -> Optional[SmtpConfig]:
        with self._data_lock:
            return self.smtp_config

    def save_smtp_config(self, config: SmtpConfig) -> SmtpConfig:
        with self._data_lock:
            config.updated_at = utcnow()
            self.smtp_config = config
            self._persist_state()
            return config

    def delete_smtp_config(self) -> bool:
        with self._data_lock:
            if self.smtp_config is None:
                return False
            self.smtp_config = None
            self._persist_state()
            return True

    def verify_connection(self) -> None:
        """Assert the state directory is writable."""
        self._state_path().parent.stat()

    # persistence
    def _persist_state(self) -> None:
        state = {
            "profiles": [self._serialize_profile(p) for p in self.profiles.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "smtp_config": (
                self._serialize_smtp_config(self.smtp_config)
                if self.smtp_config
                else None
            ),
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.profiles = {
            p["id"]: self._deserialize_profile(p) for p in data.get("profiles", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        raw_smtp = data.get("smtp_config")
        self.smtp_config = self._deserialize_smtp_config(raw_smtp) if raw_smtp else None
        return True

    def _serialize_profile(self, profile: Profile) -> dict:
        return {
            "id": profile.id,
            "email": profile.email,
            "role": profile.role,
            "created_at": self._serialize_datetime(profile.created_at),
        }

    def _deserialize_profile(self, data: dict) -> Profile:
        return Profile(
            id=data["id"],
            email=data["email"],
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "subject_id": session.subject_id,
            "role": session.role,
            "token_fingerprint": session.token_fingerprint,
            "created_at": self._serialize_datetime(session.created_at),
            "rotated_at": self._serialize_datetime(session.rotated_at),
            "revoked_at": self._serialize_datetime(session.revoked_at),
            "user_agent": session.user_agent,
            "source_address": session.source_address,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            subject_id=data["subject_id"],
            role=data["role"],
            token_fingerprint=data["token_fingerprint"],
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            rotated_at=self._deserialize_datetime(data.get("rotated_at")),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            user_agent=data.get("user_agent"),
            source_address=data.get("source_address"),
        )

    def _serialize_smtp_config(self, config: SmtpConfig) -> dict:
        return {
            "host": config.host,
            "port": config.port,
            "username": config.username,
            "password": config.password,
            "updated_at": self._serialize_datetime(config.updated_at),
        }

    def _deserialize_smtp_config(self, data: dict) -> SmtpConfig:
        return SmtpConfig(
            host=data["host"],
            port=int(data["port"]),
            username=data["username"],
            password=data["password"],
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )
