"""Unit tests for access-token encoding and refresh/reset token generation.

Tests for:
- JWT claims and header layout
- Signature, issuer, subject and algorithm checks
- Expiry handling with an injected clock
- Refresh token format and tag verification
- Reset code and friendly token shapes
"""

import base64
import json
import re
from datetime import timedelta

import pytest

from sessionward.config import SigningAlgorithm
from sessionward.service.errors import DecodeError, EncodeError
from sessionward.service.tokens import RefreshTokenGenerator, TokenCodec
from sessionward.storage.models import Session, utcnow

NOW = 1_700_000_000


def _segment(token: str, index: int) -> dict:
    raw = token.split(".")[index]
    raw += "=" * (-len(raw) % 4)
    return json.loads(base64.urlsafe_b64decode(raw))


@pytest.fixture
def session():
    return Session.new(
        "user-1",
        "r" * 128,
        3600,
        ip_address="1.1.1.1",
        user_agent="Agent A",
    )


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


class TestEncode:
    def test_header_and_claims(self, codec, session, settings):
        token = codec.encode(session, now=NOW)
        header = _segment(token, 0)
        payload = _segment(token, 1)

        assert header == {"alg": "HS256", "typ": "JWT", "kid": "hmac"}
        assert payload["jti"] == session.id
        assert payload["exp"] == NOW + settings.session_expiration_seconds
        assert payload["iat"] == NOW
        assert payload["iss"] == settings.token_issuer
        assert payload["sub"] == "session-access-token"
        assert payload["refresh_count"] == 0
        assert payload["ip"] == "1.1.1.1"
        assert payload["agent"] == "Agent A"

    def test_encode_requires_session(self, codec):
        with pytest.raises(EncodeError):
            codec.encode({"id": "not-a-session"})

    def test_encode_requires_session_id(self, codec, session):
        session.id = ""
        with pytest.raises(EncodeError):
            codec.encode(session)

    def test_encode_accepts_datetime_clock(self, codec, session):
        now = utcnow()
        payload = _segment(codec.encode(session, now=now), 1)
        assert payload["iat"] == int(now.timestamp())


class TestDecode:
    @pytest.mark.parametrize("algorithm", list(SigningAlgorithm))
    def test_round_trip_every_algorithm(self, settings, session, algorithm):
        codec = TokenCodec(settings.apply(session_algorithm=algorithm))
        token = codec.encode(session, now=NOW)
        payload = codec.decode(token, now=NOW + 1)
        assert payload["jti"] == session.id
        assert _segment(token, 0)["alg"] == algorithm.value.upper()

    def test_tampered_signature_rejected(self, codec, session):
        token = codec.encode(session, now=NOW)
        head, body, sig = token.split(".")
        raw = base64.urlsafe_b64decode(sig + "=" * (-len(sig) % 4))
        for position in range(len(raw)):
            tampered = bytearray(raw)
            tampered[position] ^= 0x01
            forged_sig = base64.urlsafe_b64encode(bytes(tampered)).decode().rstrip("=")
            with pytest.raises(DecodeError):
                codec.decode(f"{head}.{body}.{forged_sig}", now=NOW)

    def test_any_signature_character_change_rejected(self, codec, session):
        token = codec.encode(session, now=NOW)
        head, body, sig = token.split(".")
        for position in range(len(sig)):
            replacement = "A" if sig[position] != "A" else "B"
            forged_sig = sig[:position] + replacement + sig[position + 1 :]
            with pytest.raises(DecodeError):
                codec.decode(f"{head}.{body}.{forged_sig}", now=NOW)

    def test_tampered_payload_rejected(self, codec, session):
        token = codec.encode(session, now=NOW)
        head, _, sig = token.split(".")
        forged_payload = base64.urlsafe_b64encode(
            json.dumps({"jti": "someone-else", "exp": NOW + 999}).encode()
        ).decode().rstrip("=")
        with pytest.raises(DecodeError):
            codec.decode(f"{head}.{forged_payload}.{sig}", now=NOW)

    def test_other_secret_rejected(self, settings, session):
        token = TokenCodec(settings.apply(session_secret="another-secret")).encode(session, now=NOW)
        with pytest.raises(DecodeError):
            TokenCodec(settings).decode(token, now=NOW)

    def test_expiry_boundary(self, codec, session, settings):
        token = codec.encode(session, now=NOW)
        exp = NOW + settings.session_expiration_seconds
        assert codec.decode(token, now=exp - 1)["jti"] == session.id
        with pytest.raises(DecodeError):
            codec.decode(token, now=exp)

    def test_expired_after_lifetime_with_datetime_clock(self, codec, session, settings):
        issued = utcnow()
        token = codec.encode(session, now=issued)
        later = issued + timedelta(seconds=settings.session_expiration_seconds + 1)
        with pytest.raises(DecodeError):
            codec.decode(token, now=later)

    def test_wrong_issuer_rejected(self, settings, session):
        token = TokenCodec(settings.apply(token_issuer="elsewhere")).encode(session, now=NOW)
        with pytest.raises(DecodeError):
            TokenCodec(settings).decode(token, now=NOW)

    def test_wrong_subject_rejected(self, settings, session):
        token = TokenCodec(settings.apply(token_subject="other")).encode(session, now=NOW)
        with pytest.raises(DecodeError):
            TokenCodec(settings).decode(token, now=NOW)

    def test_algorithm_mismatch_rejected(self, settings, session):
        token = TokenCodec(settings.apply(session_algorithm="hs512")).encode(session, now=NOW)
        with pytest.raises(DecodeError):
            TokenCodec(settings).decode(token, now=NOW)

    @pytest.mark.parametrize(
        "garbage",
        ["", "abc", "a.b", "a.b.c.d", "!!!.???.###", None, 12345],
    )
    def test_malformed_input_rejected(self, codec, garbage):
        with pytest.raises(DecodeError):
            codec.decode(garbage, now=NOW)

    def test_failures_share_one_message(self, codec, session):
        token = codec.encode(session, now=NOW)
        messages = set()
        for bad in ("garbage", token + "x"):
            with pytest.raises(DecodeError) as exc_info:
                codec.decode(bad, now=NOW)
            messages.add(str(exc_info.value))
        with pytest.raises(DecodeError) as exc_info:
            codec.decode(token, now=NOW + 10_000)
        messages.add(str(exc_info.value))
        assert messages == {"invalid token"}


class TestRefreshTokens:
    def test_refresh_token_format(self, settings):
        generator = RefreshTokenGenerator(settings)
        token = generator.generate_refresh_token()
        assert len(token) == 128
        assert re.fullmatch(r"[0-9a-f]{128}", token)

    def test_refresh_tokens_are_unique(self, settings):
        generator = RefreshTokenGenerator(settings)
        tokens = {generator.generate_refresh_token() for _ in range(50)}
        assert len(tokens) == 50

    def test_verify_accepts_own_tokens(self, settings):
        generator = RefreshTokenGenerator(settings)
        assert generator.verify_refresh_token(generator.generate_refresh_token())

    def test_verify_rejects_forged_tag(self, settings):
        generator = RefreshTokenGenerator(settings)
        token = generator.generate_refresh_token()
        forged = ("0" if token[0] != "0" else "1") + token[1:]
        assert not generator.verify_refresh_token(forged)

    def test_verify_rejects_other_secret(self, settings):
        token = RefreshTokenGenerator(settings.apply(session_secret="x")).generate_refresh_token()
        assert not RefreshTokenGenerator(settings).verify_refresh_token(token)

    @pytest.mark.parametrize("bad", [None, "", "short", "f" * 127, "f" * 129])
    def test_verify_rejects_wrong_shape(self, settings, bad):
        assert not RefreshTokenGenerator(settings).verify_refresh_token(bad)


class TestResetCodes:
    def test_reset_code_shape(self):
        code = RefreshTokenGenerator.generate_opaque_reset_code()
        assert re.fullmatch(r"[A-Za-z0-9]{6}-[A-Za-z0-9]{6}", code)

    def test_friendly_token_avoids_confusable_characters(self):
        for _ in range(20):
            token = RefreshTokenGenerator.friendly_token()
            assert len(token) == 20
            assert not set(token) & set("lIO0")

    def test_friendly_token_length(self):
        assert len(RefreshTokenGenerator.friendly_token(32)) == 32
