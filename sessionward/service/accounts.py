from __future__ import annotations

import hashlib
from datetime import datetime, timedelta
from typing import Optional, Set

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.email import EmailService
from sessionward.service.errors import UnprocessableError
from sessionward.service.sessions import SessionService, SessionStore
from sessionward.service.tokens import RefreshTokenGenerator
from sessionward.storage.errors import ConstraintViolation
from sessionward.storage.models import User, normalize_email, utcnow

logger = get_logger(__name__)

CURRENT_PASSWORD_INCORRECT = "Current password is incorrect"


def _email_taken() -> UnprocessableError:
    return UnprocessableError(
        "email address unavailable",
        detail={"errors": ["Email address has already been taken"]},
    )


def _reset_digest(code: str) -> str:
    return hashlib.sha256(code.strip().encode()).hexdigest()


class AccountService:
    """Credential verification and password lifecycle for users."""

    def __init__(
        self,
        store: SessionStore,
        settings: Settings,
        sessions: SessionService,
        *,
        email: Optional[EmailService] = None,
        generator: Optional[RefreshTokenGenerator] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.sessions = sessions
        self.email = email or EmailService()
        self.generator = generator or RefreshTokenGenerator(settings)
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so both paths cost a hash
        self._dummy_hash = self._pwd_hasher.hash("sessionward-placeholder")

    def validate_password(self, password: str, confirmation: Optional[str] = None) -> None:
        errors = []
        if len(password or "") < self.settings.password_min_length:
            errors.append(
                f"Password is too short (minimum is {self.settings.password_min_length} characters)"
            )
        if len(password or "") > self.settings.password_max_length:
            errors.append(
                f"Password is too long (maximum is {self.settings.password_max_length} characters)"
            )
        if confirmation is not None and confirmation != password:
            errors.append("Password confirmation doesn't match Password")
        if errors:
            raise UnprocessableError("invalid password", detail={"errors": errors})

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def create_user(
        self, email: str, password: str, *, roles: Optional[Set[str]] = None
    ) -> User:
        self.validate_password(password)
        user = self.store.create_user(email, self.hash_password(password), roles=roles)
        logger.info("user_created", user_id=user.id)
        return user

    def verify(self, email: str, password: str) -> Optional[User]:
        """Return the user when ``password`` matches, otherwise None."""
        user = self.store.get_user_by_email(email)
        stored_hash = user.password_hash if user and user.password_hash else self._dummy_hash
        try:
            matched = self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            matched = False
        if not user or not user.password_hash or not matched:
            logger.info("credential_verification_failed", user_known=user is not None)
            return None
        return user

    def password_expired(self, user: User, now: Optional[datetime] = None) -> bool:
        if not self.settings.password_expires:
            return False
        return user.password_expired(
            timedelta(days=self.settings.password_expires_in_days), now
        )

    def change_password(self, user: User, password: str, *, now: Optional[datetime] = None) -> User:
        self.validate_password(password)
        user.password_hash = self.hash_password(password)
        user.password_changed_at = now or utcnow()
        return self.store.update_user(user)

    def register(
        self, email: str, password: str, confirmation: Optional[str] = None
    ) -> User:
        """Self-service sign-up; a taken address is reported like any other input error."""
        self.validate_password(password, confirmation)
        try:
            return self.create_user(email, password)
        except ConstraintViolation:
            raise _email_taken()

    def _confirm_current_password(self, user: User, current_password: Optional[str]) -> None:
        if not current_password or self.verify(user.email, current_password) is None:
            raise UnprocessableError(CURRENT_PASSWORD_INCORRECT)

    def update_account(
        self,
        user: User,
        current_password: Optional[str],
        *,
        email: Optional[str] = None,
        password: Optional[str] = None,
        confirmation: Optional[str] = None,
    ) -> User:
        self._confirm_current_password(user, current_password)
        if password:
            self.validate_password(password, confirmation)
        if email and normalize_email(email) != user.email:
            user.email = normalize_email(email)
            try:
                user = self.store.update_user(user)
            except ConstraintViolation:
                raise _email_taken()
        if password:
            user = self.change_password(user, password)
        logger.info("account_updated", user_id=user.id, password_changed=bool(password))
        return user

    def delete_account(self, user: User, current_password: Optional[str]) -> bool:
        """Remove the user; their sessions go with them."""
        self._confirm_current_password(user, current_password)
        deleted = self.store.delete_user(user.id)
        logger.info("account_deleted", user_id=user.id, deleted=deleted)
        return deleted

    def request_password_reset(self, email: str, *, now: Optional[datetime] = None) -> Optional[str]:
        """Issue and deliver a reset code if the account exists.

        Callers must answer identically either way so accounts can't be probed.
        """
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            logger.info("password_reset_unknown_email")
            return None
        code = self.generator.generate_opaque_reset_code()
        user.reset_code_digest = _reset_digest(code)
        user.reset_code_sent_at = now or utcnow()
        self.store.update_user(user)
        self.email.send_password_reset(
            user.email,
            code,
            expires_in_minutes=self.settings.reset_password_token_expires_in_seconds // 60,
        )
        logger.info("password_reset_requested", user_id=user.id)
        return code

    def reset_password(
        self,
        code: str,
        password: str,
        confirmation: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        """Consume a reset code and set a new password.

        Returns None for unknown or expired codes. All sessions of the user are
        revoked on success.
        """
        now = now or utcnow()
        if not code:
            return None
        # Weak passwords are refused before the code is spent
        self.validate_password(password, confirmation)
        user = self.store.consume_reset_digest(_reset_digest(code))
        if user is None or user.reset_code_sent_at is None:
            logger.warning("password_reset_invalid_code")
            return None
        ttl = timedelta(seconds=self.settings.reset_password_token_expires_in_seconds)
        if user.reset_code_sent_at + ttl < now:
            logger.warning("password_reset_code_expired", user_id=user.id)
            return None
        user.password_hash = self.hash_password(password)
        user.password_changed_at = now
        user.reset_code_digest = None
        user.reset_code_sent_at = None
        updated = self.store.update_user(user)
        self.sessions.revoke_all(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return updated
