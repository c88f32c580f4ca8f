"""Unit tests for token parsing, expiry and signing.

Tests for:
- Structural decoding that never raises
- Liveness and remaining lifetime
- Truncation never yielding a usable token
- HS256 signing and verifier selection
"""

import pytest

from conftest import START_TIME
from pantrypal.config import IdentityBackend, Settings, TokenVerification
from pantrypal.service.tokens import (
    MALFORMED,
    HS256Verifier,
    JWKSVerifier,
    Token,
    TokenCodec,
    TokenSigner,
    build_verifier,
)


@pytest.fixture
def codec(clock):
    return TokenCodec(clock)


class TestDecode:
    """Tests for TokenCodec.decode."""

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "abc",
            "a.b",
            "a.b.c.d",
            "a..c",
            "..",
            "a.b.c",
            "!!!.e30.c2ln",
            "e30.bm90anNvbg.c2ln",  # payload is not JSON
            "W10.e30.c2ln",  # header is a JSON array
            "e30.e30.c2@n",
            "é.é.é",
            None,
            12345,
            b"e30.e30.c2ln",
        ],
    )
    def test_malformed_inputs_return_sentinel(self, codec, raw):
        """Malformed input yields MALFORMED instead of raising."""
        assert codec.decode(raw) is MALFORMED

    def test_malformed_sentinel_is_falsy(self):
        assert not MALFORMED
        assert repr(MALFORMED) == "MALFORMED"

    def test_well_formed_token(self, codec, raw_token):
        """A three-segment token with JSON header and claims decodes."""
        raw = raw_token({"sub": "alice", "exp": START_TIME + 60})
        token = codec.decode(raw)

        assert isinstance(token, Token)
        assert token.subject == "alice"
        assert token.expires_at == START_TIME + 60
        assert token.raw == raw

    def test_non_numeric_expiry_is_dropped(self, codec, raw_token):
        token = codec.decode(raw_token({"sub": "alice", "exp": "tomorrow"}))
        assert isinstance(token, Token)
        assert token.expires_at is None

    def test_boolean_expiry_is_dropped(self, codec, raw_token):
        token = codec.decode(raw_token({"sub": "alice", "exp": True}))
        assert token.expires_at is None

    def test_empty_subject_is_none(self, codec, raw_token):
        token = codec.decode(raw_token({"sub": "", "exp": START_TIME + 60}))
        assert token.subject is None


class TestLiveness:
    """Tests for is_live and remaining_seconds."""

    def test_expired_one_second_ago_is_not_live(self, codec, raw_token, clock):
        token = codec.decode(raw_token({"sub": "alice", "exp": clock() - 1}))
        assert codec.is_live(token, clock()) is False

    def test_expiring_in_one_second_is_live(self, codec, raw_token, clock):
        token = codec.decode(raw_token({"sub": "alice", "exp": clock() + 1}))
        assert codec.is_live(token, clock()) is True

    def test_expiry_equal_to_now_is_not_live(self, codec, raw_token, clock):
        token = codec.decode(raw_token({"sub": "alice", "exp": clock()}))
        assert codec.is_live(token, clock()) is False

    def test_missing_expiry_fails_closed(self, codec, raw_token):
        token = codec.decode(raw_token({"sub": "alice"}))
        assert codec.is_live(token) is False
        assert codec.remaining_seconds(token) == 0

    def test_malformed_is_never_live(self, codec):
        assert codec.is_live(MALFORMED) is False
        assert codec.is_live(None) is False

    def test_uses_injected_clock_by_default(self, codec, raw_token, clock):
        token = codec.decode(raw_token({"sub": "alice", "exp": clock() + 30}))
        assert codec.is_live(token)
        clock.advance(31)
        assert not codec.is_live(token)

    def test_remaining_seconds_floors(self, codec, raw_token, clock):
        token = codec.decode(raw_token({"sub": "alice", "exp": clock() + 90.9}))
        assert codec.remaining_seconds(token, clock()) == 90

    def test_remaining_seconds_never_negative(self, codec, raw_token, clock):
        token = codec.decode(raw_token({"sub": "alice", "exp": clock() - 500}))
        assert codec.remaining_seconds(token, clock()) == 0


class TestTruncate:
    """A truncated token must never be structurally valid."""

    def test_cut_inside_signature_drops_signature(self, codec, make_token):
        raw = make_token()
        truncated = codec.truncate(raw, len(raw) - 3)

        assert codec.decode(truncated) is MALFORMED
        assert raw.startswith(truncated)
        assert len(truncated) <= len(raw) - 3

    @pytest.mark.parametrize("limit", [0, 1, 10, 40, 80, 120, 200])
    def test_any_limit_yields_malformed(self, codec, make_token, limit):
        raw = make_token(padding="x" * 300)
        truncated = codec.truncate(raw, limit)

        assert len(truncated) <= limit
        assert codec.decode(truncated) is MALFORMED
        assert not codec.is_live(codec.decode(truncated))

    def test_every_prefix_is_rejected(self, codec, make_token):
        raw = make_token()
        for limit in range(len(raw)):
            assert codec.decode(codec.truncate(raw, limit)) is MALFORMED


class TestMask:
    def test_long_value_shows_head_and_tail(self, codec, make_token):
        raw = make_token()
        preview = codec.mask(raw)
        assert preview == f"{raw[:10]}...{raw[-5:]}"
        assert raw not in preview

    def test_missing_value(self, codec):
        assert codec.mask(None) == "missing"

    def test_short_value_fully_masked(self, codec):
        assert set(codec.mask("abc123")) == {"*"}


class TestSigner:
    """Tests for HS256 issuing and verification."""

    def test_issued_token_carries_claims(self, signer, clock):
        raw = signer.issue("user-1", 600, now=clock(), extra={"username": "alice"})
        claims = signer.claims(raw)

        assert claims["sub"] == "user-1"
        assert claims["exp"] == int(clock()) + 600
        assert claims["token_use"] == "access"
        assert claims["username"] == "alice"

    def test_tampered_payload_fails(self, signer, raw_token, clock):
        raw = signer.issue("user-1", 600, now=clock())
        header, _, signature = raw.split(".")
        forged = raw_token({"sub": "admin", "exp": clock() + 600}).split(".")[1]
        assert signer.verify(f"{header}.{forged}.{signature}") is False

    def test_alg_none_rejected(self, signer, raw_token, clock):
        raw = raw_token({"sub": "user-1", "exp": clock() + 600}, header={"alg": "none"})
        assert signer.verify(raw) is False
        assert signer.claims(raw) is None

    def test_other_secret_rejected(self, signer, clock):
        other = TokenSigner("another-secret-entirely-0123456789", signer.issuer)
        assert signer.verify(other.issue("user-1", 600, now=clock())) is False

    def test_empty_secret_refused(self):
        with pytest.raises(ValueError):
            TokenSigner("", "issuer")


class TestBuildVerifier:
    """Tests for verification mode selection."""

    def test_auto_uses_hs256_for_memory_backend(self):
        verifier = build_verifier(Settings(identity_backend=IdentityBackend.MEMORY))
        assert isinstance(verifier, HS256Verifier)
        assert verifier.blocking is False

    def test_none_disables_verification(self):
        assert build_verifier(Settings(token_verification=TokenVerification.NONE)) is None

    def test_auto_uses_jwks_for_configured_pool(self):
        settings = Settings(
            identity_backend=IdentityBackend.COGNITO,
            cognito_region="eu-west-1",
            cognito_user_pool_id="eu-west-1_abc123",
            cognito_client_id="client123",
        )
        verifier = build_verifier(settings)

        assert isinstance(verifier, JWKSVerifier)
        assert verifier.blocking is True
        assert verifier.jwks_url == (
            "https://cognito-idp.eu-west-1.amazonaws.com/eu-west-1_abc123/.well-known/jwks.json"
        )

    def test_auto_without_pool_is_trust_boundary(self):
        settings = Settings(identity_backend=IdentityBackend.COGNITO)
        assert build_verifier(settings) is None

    def test_jwks_without_url_is_none(self):
        settings = Settings(token_verification=TokenVerification.JWKS)
        assert build_verifier(settings) is None
