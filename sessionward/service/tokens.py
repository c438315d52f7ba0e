"""Access-token signing and refresh/reset token generation.

Access tokens are compact HMAC-signed JWTs carrying the session id as ``jti``.
Refresh tokens are opaque strings: an HMAC-SHA256 hex tag followed by the hex
nonce it was computed over.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import string
import time
from datetime import datetime
from typing import Any, Optional

from sessionward.config import Settings, SigningAlgorithm
from sessionward.logging import get_logger
from sessionward.service.errors import DecodeError, EncodeError
from sessionward.storage.models import Session

logger = get_logger(__name__)

_DIGESTS = {
    SigningAlgorithm.HS256: hashlib.sha256,
    SigningAlgorithm.HS384: hashlib.sha384,
    SigningAlgorithm.HS512: hashlib.sha512,
}

_RESET_ALPHABET = string.ascii_letters + string.digits


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _timestamp(now: Optional[datetime | float]) -> float:
    if now is None:
        return time.time()
    if isinstance(now, datetime):
        return now.timestamp()
    return float(now)


class TokenCodec:
    """Stateless encoder/decoder for session access tokens."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _algorithm(self) -> SigningAlgorithm:
        algorithm = self.settings.session_algorithm
        try:
            algorithm = SigningAlgorithm(algorithm)
        except ValueError:
            raise EncodeError(f"unsupported signing algorithm: {algorithm!r}") from None
        return algorithm

    def _sign(self, signing_input: str, algorithm: SigningAlgorithm) -> bytes:
        secret = self.settings.session_secret or ""
        return hmac.new(
            secret.encode(), signing_input.encode(), _DIGESTS[algorithm]
        ).digest()

    def encode(self, session: Session, *, now: Optional[datetime | float] = None) -> str:
        """Sign an access token for ``session`` expiring after the configured TTL."""
        if not isinstance(session, Session) or not session.id:
            raise EncodeError("a persisted session is required to issue a token")
        algorithm = self._algorithm()
        issued_at = int(_timestamp(now))
        header = {"alg": algorithm.value.upper(), "typ": "JWT", "kid": "hmac"}
        payload: dict[str, Any] = {
            "jti": session.id,
            "exp": issued_at + self.settings.session_expiration_seconds,
            "iat": issued_at,
            "iss": self.settings.token_issuer,
            "sub": self.settings.token_subject,
            "refresh_count": session.refresh_count,
            "ip": session.ip_address,
            "agent": session.user_agent,
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self._sign(signing_input, algorithm)
        return f"{signing_input}.{_encode_segment(signature)}"

    def decode(self, token: str, *, now: Optional[datetime | float] = None) -> dict[str, Any]:
        """Verify ``token`` and return its claims.

        Every failure raises the same DecodeError; the reason only reaches
        the debug log.
        """
        try:
            return self._verify(token, _timestamp(now))
        except DecodeError:
            raise
        except Exception as exc:
            logger.debug("access_token_rejected", reason="malformed", error=type(exc).__name__)
            raise DecodeError() from None

    def _reject(self, reason: str, **fields: Any) -> DecodeError:
        logger.debug("access_token_rejected", reason=reason, **fields)
        return DecodeError()

    def _verify(self, token: str, now_ts: float) -> dict[str, Any]:
        if not isinstance(token, str):
            raise self._reject("not_a_string")
        parts = token.split(".")
        if len(parts) != 3:
            raise self._reject("segment_count", segments=len(parts))
        header_b64, payload_b64, sig_b64 = parts

        algorithm = self.settings.session_algorithm
        header = json.loads(_decode_segment(header_b64))
        # Pin the header algorithm to the configured one to block alg confusion
        if not isinstance(header, dict) or header.get("alg") != algorithm.value.upper():
            raise self._reject("algorithm_mismatch")

        expected_sig = _encode_segment(self._sign(f"{header_b64}.{payload_b64}", algorithm))
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise self._reject("bad_signature")

        payload = json.loads(_decode_segment(payload_b64))
        if not isinstance(payload, dict):
            raise self._reject("payload_not_object")
        if payload.get("iss") != self.settings.token_issuer:
            raise self._reject("wrong_issuer")
        if payload.get("sub") != self.settings.token_subject:
            raise self._reject("wrong_subject")
        if not payload.get("jti"):
            raise self._reject("missing_jti")
        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise self._reject("missing_exp")
        if exp <= now_ts:
            raise self._reject("expired")
        return payload


class RefreshTokenGenerator:
    """Produces refresh tokens and short human-copyable reset codes."""

    NONCE_BYTES = 32

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def _tag(self, nonce: str) -> str:
        secret = self.settings.session_secret or ""
        return hmac.new(secret.encode(), nonce.encode(), hashlib.sha256).hexdigest()

    def generate_refresh_token(self) -> str:
        nonce = secrets.token_hex(self.NONCE_BYTES)
        return self._tag(nonce) + nonce

    def verify_refresh_token(self, token: Optional[str]) -> bool:
        """Check the HMAC tag of a refresh token in constant time."""
        if not isinstance(token, str) or len(token) != 4 * self.NONCE_BYTES:
            return False
        tag, nonce = token[: 2 * self.NONCE_BYTES], token[2 * self.NONCE_BYTES :]
        return hmac.compare_digest(tag.encode(), self._tag(nonce).encode())

    @staticmethod
    def generate_opaque_reset_code() -> str:
        raw = "".join(secrets.choice(_RESET_ALPHABET) for _ in range(12))
        return f"{raw[:6]}-{raw[6:]}"

    @staticmethod
    def friendly_token(length: int = 20) -> str:
        """URL-safe token without easily confused characters."""
        raw_bytes = (length * 3) // 4 + 1
        token = base64.urlsafe_b64encode(secrets.token_bytes(raw_bytes)).decode()
        return token.translate(str.maketrans("lIO0", "sxyz"))[:length]
