from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from sessionward.config import Settings
from sessionward.logging import bind_identity, clear_identity, get_logger
from sessionward.service.errors import AuthenticationError, DecodeError, ForbiddenError
from sessionward.service.sessions import SessionStore
from sessionward.service.tokens import TokenCodec
from sessionward.storage.models import Session, User, utcnow

logger = get_logger(__name__)

NOT_SIGNED_IN = "You are not signed in"
NOT_AUTHORIZED = "You are not authorized to perform this action"


@dataclass(frozen=True)
class RequestContext:
    """Authentication outcome bound to a single request."""

    session: Optional[Session] = None
    user: Optional[User] = None

    @property
    def authenticated(self) -> bool:
        return self.session is not None and self.user is not None


ANONYMOUS = RequestContext()

_request_context: ContextVar[RequestContext] = ContextVar(
    "sessionward_request_context", default=ANONYMOUS
)


def begin_request() -> None:
    """Clear any authentication left over in this context."""
    _request_context.set(ANONYMOUS)
    clear_identity()


def current_context() -> RequestContext:
    return _request_context.get()


def current_session() -> Optional[Session]:
    return _request_context.get().session


class RequestAuthenticator:
    """Turns a bearer token plus request fingerprint into a RequestContext.

    Every failure collapses to anonymous; the reason is only logged at debug.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        *,
        codec: Optional[TokenCodec] = None,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        self.store = store
        self.settings = settings
        self.codec = codec or TokenCodec(settings)
        self.exempt_paths = set(exempt_paths)

    def skip_authentication(self, *paths: str) -> None:
        self.exempt_paths.update(paths)

    def is_exempt(self, path: str) -> bool:
        return path in self.exempt_paths

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header or not header.startswith("Bearer "):
            return None
        token = header[len("Bearer "):].strip()
        return token or None

    def _anonymous(self, reason: str, **fields) -> RequestContext:
        logger.debug("request_unauthenticated", reason=reason, **fields)
        return ANONYMOUS

    def authenticate(
        self,
        authorization: Optional[str],
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        path: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RequestContext:
        """Resolve the request's session and bind it as the current context."""
        begin_request()
        if path is not None and self.is_exempt(path):
            return ANONYMOUS
        token = self._extract_bearer(authorization)
        if token is None:
            return self._anonymous("missing_bearer")
        try:
            payload = self.codec.decode(token, now=now)
        except DecodeError:
            return self._anonymous("undecodable_token")
        session = self.store.find_active_session(str(payload["jti"]))
        if session is None:
            return self._anonymous("session_not_found")
        if not session.is_valid(now or utcnow()):
            return self._anonymous("session_invalid", session_id=session.id)
        if not session.matches_request(ip_address, user_agent):
            return self._anonymous("fingerprint_mismatch", session_id=session.id)
        user = self.store.get_user(session.user_id)
        if user is None:
            return self._anonymous("user_missing", session_id=session.id)
        context = RequestContext(session=session, user=user)
        _request_context.set(context)
        bind_identity(session.id, user.id)
        return context

    def require_authenticated(self, context: RequestContext) -> RequestContext:
        if not context.authenticated:
            raise AuthenticationError(NOT_SIGNED_IN)
        return context

    def require_admin(self, context: RequestContext) -> RequestContext:
        """Authorization check composed after authentication."""
        self.require_authenticated(context)
        if not context.user.has_role(self.settings.admin_role):
            logger.info("admin_access_denied", user_id=context.user.id)
            raise ForbiddenError(NOT_AUTHORIZED)
        return context
