from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol, Set

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.errors import (
    RefreshConflictError,
    TokenExpiredError,
    TokenRevokedError,
)
from sessionward.service.tokens import RefreshTokenGenerator, TokenCodec
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import Session, User, utcnow

logger = get_logger(__name__)

# Attempts at drawing a fresh refresh token before giving up on a collision
_MAX_TOKEN_ATTEMPTS = 3


class SessionStore(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        roles: Optional[Set[str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def consume_reset_digest(self, digest: str) -> Optional[User]: ...

    def update_user(self, user: User) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_active_session(self, session_id: str) -> Optional[Session]: ...

    def find_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]: ...

    def update_session(self, session: Session) -> Session: ...

    def rotate_refresh_token(
        self,
        session_id: str,
        expected_token: str,
        new_token: str,
        *,
        expires_at: datetime,
        refreshed_at: datetime,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_user_sessions(self, user_id: str) -> int: ...

    def list_sessions_for_user(
        self, user_id: str, *, include_revoked: bool = False
    ) -> List[Session]: ...

    def delete_sessions_for_user(self, user_id: str) -> int: ...


class SessionService:
    """Creates, rotates and revokes sessions.

    Refresh expiry slides: every successful refresh pushes
    ``refresh_token_expires_at`` to ``now + refresh ttl``.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        generator: Optional[RefreshTokenGenerator] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec or TokenCodec(settings)
        self.generator = generator or RefreshTokenGenerator(settings)
        self.logger = logger

    def _refresh_ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.session_refresh_token_expires_in_seconds)

    def create(
        self,
        user: User,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: Optional[datetime] = None,
    ) -> Session:
        """Open an Active session bound to the request fingerprint."""
        now = now or utcnow()
        attempt = 0
        while True:
            session = Session.new(
                user.id,
                self.generator.generate_refresh_token(),
                self.settings.session_refresh_token_expires_in_seconds,
                ip_address=ip_address,
                user_agent=user_agent,
                now=now,
            )
            try:
                stored = self.store.create_session(session)
            except ConstraintViolation as exc:
                attempt += 1
                if exc.detail.get("field") != "refresh_token" or attempt >= _MAX_TOKEN_ATTEMPTS:
                    raise
                self.logger.warning("refresh_token_collision", attempt=attempt)
                continue
            self.logger.info("session_created", session_id=stored.id, user_id=user.id)
            return stored

    def refresh(self, session: Session, *, now: Optional[datetime] = None) -> Session:
        """Rotate the refresh token of ``session``.

        Raises TokenRevokedError or TokenExpiredError for dead sessions and
        RefreshConflictError when the presented token was already rotated.
        """
        now = now or utcnow()
        if session.revoked:
            raise TokenRevokedError("session has been revoked")
        if session.is_refresh_expired(now):
            raise TokenExpiredError("refresh token has expired")
        rotated = self.store.rotate_refresh_token(
            session.id,
            session.refresh_token,
            self.generator.generate_refresh_token(),
            expires_at=now + self._refresh_ttl(),
            refreshed_at=now,
        )
        if rotated is None:
            # The conditional update found no row; work out why for the caller.
            current = self.store.get_session(session.id)
            if current is not None and current.revoked:
                raise TokenRevokedError("session has been revoked")
            self.logger.warning("refresh_rotation_conflict", session_id=session.id)
            raise RefreshConflictError("refresh token is no longer current")
        self.logger.info(
            "session_refreshed",
            session_id=rotated.id,
            refresh_count=rotated.refresh_count,
        )
        return rotated

    def refresh_with_token(
        self,
        refresh_token: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Look up a session by refresh token, check it against the request and rotate it.

        Returns None whenever the token cannot be honored, without saying why.
        """
        now = now or utcnow()
        if not self.generator.verify_refresh_token(refresh_token):
            self.logger.debug("refresh_rejected", reason="bad_tag")
            return None
        session = self.store.find_session_by_refresh_token(refresh_token)
        if session is None:
            self.logger.debug("refresh_rejected", reason="unknown_token")
            return None
        if not session.is_valid(now) or not session.matches_request(ip_address, user_agent):
            self.logger.debug("refresh_rejected", reason="invalid_session", session_id=session.id)
            return None
        try:
            return self.refresh(session, now=now)
        except (TokenRevokedError, TokenExpiredError, RefreshConflictError) as exc:
            self.logger.debug(
                "refresh_rejected", reason=type(exc).__name__, session_id=session.id
            )
            return None

    def issue_tokens(self, session: Session) -> dict:
        return {
            "access_token": self.codec.encode(session),
            "refresh_token": session.refresh_token,
            "refresh_token_expires_at": session.refresh_token_expires_at,
        }

    def revoke(self, session: Session | str) -> Optional[Session]:
        """Mark a session revoked; revoking twice is a no-op."""
        session_id = session if isinstance(session, str) else session.id
        revoked = self.store.revoke_session(session_id)
        if revoked is not None:
            self.logger.info("session_revoked", session_id=session_id)
        return revoked

    def revoke_all(self, user_id: str) -> int:
        count = self.store.revoke_user_sessions(user_id)
        self.logger.info("sessions_revoked_for_user", user_id=user_id, count=count)
        return count

    def list_active(self, user_id: str, *, now: Optional[datetime] = None) -> List[Session]:
        now = now or utcnow()
        return [s for s in self.store.list_sessions_for_user(user_id) if s.is_valid(now)]

    def get_for_user(self, user_id: str, session_id: str) -> Optional[Session]:
        session = self.store.get_session(session_id)
        if session is None or session.user_id != user_id:
            return None
        return session
