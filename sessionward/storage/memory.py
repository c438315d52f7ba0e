from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, List, Optional, Set

from sessionward.logging import get_logger
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Session, User, normalize_email, utcnow


class MemoryStore:
    """In-process backing store for tests and single-node deployments.

    Every read hands out a copy so callers never mutate shared records outside
    ``_data_lock``.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.sessions: Dict[str, Session] = {}
        # refresh_token -> session_id; keyed by current value only
        self._refresh_index: Dict[str, str] = {}
        # RLock so cascade helpers can re-enter from within a locked call
        self._data_lock = threading.RLock()

    # user / auth
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        roles: Optional[Set[str]] = None,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(normalized, password_hash, roles=roles)
            self.users[user.id] = user
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def consume_reset_digest(self, digest: str) -> Optional[User]:
        """Clear a pending reset code and return the user as it was before.

        Only one caller can win a given digest.
        """
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.reset_code_digest == digest),
                None,
            )
            if user is None:
                return None
            claimed = copy.deepcopy(user)
            user.reset_code_digest = None
            user.reset_code_sent_at = None
            return claimed

    def update_user(self, user: User) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            normalized = normalize_email(user.email)
            if any(
                other.email == normalized and other.id != user.id
                for other in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = copy.deepcopy(user)
            stored.email = normalized
            self.users[user.id] = stored
            return copy.deepcopy(stored)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.delete_sessions_for_user(user_id)
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"field": "id"})
            if session.refresh_token in self._refresh_index:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            stored = copy.copy(session)
            self.sessions[stored.id] = stored
            self._refresh_index[stored.refresh_token] = stored.id
            return copy.copy(stored)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return copy.copy(sess) if sess else None

    def find_active_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked:
                return None
            return copy.copy(sess)

    def find_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._refresh_index.get(refresh_token)
            if not session_id:
                return None
            return self.get_session(session_id)

    def update_session(self, session: Session) -> Session:
        """Persist mutable fields of ``session``; fingerprint and revocation are preserved."""
        with self._data_lock:
            current = self.sessions.get(session.id)
            if not current:
                raise ConstraintViolation("session not found", {"session_id": session.id})
            if session.refresh_token != current.refresh_token:
                owner = self._refresh_index.get(session.refresh_token)
                if owner and owner != session.id:
                    raise ConstraintViolation(
                        "refresh token already exists", {"field": "refresh_token"}
                    )
                self._refresh_index.pop(current.refresh_token, None)
                self._refresh_index[session.refresh_token] = session.id
            stored = copy.copy(session)
            stored.ip_address = current.ip_address
            stored.user_agent = current.user_agent
            stored.created_at = current.created_at
            stored.revoked = current.revoked or session.revoked
            stored.refresh_count = max(current.refresh_count, session.refresh_count)
            stored.updated_at = utcnow()
            self.sessions[session.id] = stored
            return copy.copy(stored)

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        *,
        expires_at: datetime,
        refreshed_at: datetime,
    ) -> Optional[Session]:
        """Swap the refresh token only if it still equals ``expected_token``.

        Returns None when the session is gone, revoked, or was already rotated.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked or sess.refresh_token != expected_token:
                return None
            if new_token in self._refresh_index:
                raise ConstraintViolation(
                    "refresh token already exists", {"field": "refresh_token"}
                )
            self._refresh_index.pop(expected_token, None)
            self._refresh_index[new_token] = session_id
            sess.refresh_token = new_token
            sess.refresh_count += 1
            sess.last_refreshed_at = refreshed_at
            sess.refresh_token_expires_at = expires_at
            sess.updated_at = refreshed_at
            return copy.copy(sess)

    def revoke_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            if not sess.revoked:
                sess.revoked = True
                sess.updated_at = utcnow()
            return copy.copy(sess)

    def revoke_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            now = utcnow()
            for sess in self.sessions.values():
                if sess.user_id == user_id and not sess.revoked:
                    sess.revoked = True
                    sess.updated_at = now
                    count += 1
            return count

    def list_sessions_for_user(
        self, user_id: str, *, include_revoked: bool = False
    ) -> List[Session]:
        with self._data_lock:
            results = [
                copy.copy(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (include_revoked or not s.revoked)
            ]
        return sorted(results, key=lambda s: s.created_at, reverse=True)

    def delete_sessions_for_user(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                sess = self.sessions.pop(sid)
                self._refresh_index.pop(sess.refresh_token, None)
            if stale:
                self.logger.info("sessions_deleted_for_user", user_id=user_id, count=len(stale))
            return len(stale)
