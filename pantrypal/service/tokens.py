from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol, Union

import jwt

from pantrypal.config import IdentityBackend, Settings, TokenVerification
from pantrypal.logging import get_logger, mask_secret

logger = get_logger(__name__)

_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")


class _Malformed:
    """Sentinel returned by ``TokenCodec.decode`` for untrusted input."""

    _instance: Optional["_Malformed"] = None

    def __new__(cls) -> "_Malformed":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MALFORMED"


MALFORMED = _Malformed()


@dataclass(frozen=True)
class Token:
    """A structurally valid bearer token.

    Claims are decoded but not trusted for anything beyond expiry and the
    subject used for display and logging.
    """

    raw: str
    header: dict[str, Any] = field(repr=False)
    claims: dict[str, Any] = field(repr=False)
    subject: Optional[str] = None
    expires_at: Optional[float] = None


DecodeResult = Union[Token, _Malformed]


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment.rstrip("=") + padding)


def _decode_json_segment(segment: str) -> Optional[dict[str, Any]]:
    if not _SEGMENT.match(segment):
        return None
    try:
        decoded = json.loads(_decode_segment(segment))
    except (ValueError, TypeError, RecursionError):
        return None
    return decoded if isinstance(decoded, dict) else None


class TokenCodec:
    """Parses bearer tokens and answers expiry questions about them.

    ``decode`` runs on every protected request and must never raise.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock

    def now(self) -> float:
        return self.clock()

    def decode(self, raw: Any) -> DecodeResult:
        if not isinstance(raw, str) or not raw:
            return MALFORMED
        parts = raw.split(".")
        if len(parts) != 3 or not all(parts):
            return MALFORMED
        header = _decode_json_segment(parts[0])
        claims = _decode_json_segment(parts[1])
        if header is None or claims is None:
            return MALFORMED
        if not _SEGMENT.match(parts[2]):
            return MALFORMED

        subject = claims.get("sub")
        exp = claims.get("exp")
        expires_at: Optional[float] = None
        if isinstance(exp, (int, float)) and not isinstance(exp, bool) and math.isfinite(exp):
            expires_at = float(exp)
        return Token(
            raw=raw,
            header=header,
            claims=claims,
            subject=subject if isinstance(subject, str) and subject else None,
            expires_at=expires_at,
        )

    def is_live(self, token: Optional[DecodeResult], now: Optional[float] = None) -> bool:
        if not isinstance(token, Token) or token.expires_at is None:
            return False
        current = self.now() if now is None else now
        return token.expires_at > current

    def remaining_seconds(self, token: Optional[DecodeResult], now: Optional[float] = None) -> int:
        if not isinstance(token, Token) or token.expires_at is None:
            return 0
        current = self.now() if now is None else now
        return max(0, math.floor(token.expires_at - current))

    def mask(self, raw: Optional[str]) -> str:
        return mask_secret(raw)

    def truncate(self, raw: str, limit: int) -> str:
        """Cut ``raw`` to at most ``limit`` characters.

        The result is guaranteed not to decode as a token: when the plain cut
        still happens to parse (a cut inside the signature), everything from
        the last separator onward is dropped.
        """
        cut = raw[: max(limit, 0)]
        while not isinstance(self.decode(cut), _Malformed):
            cut = cut[: cut.rfind(".")]
        return cut


class TokenSigner:
    """HS256 issuer/verifier used by the local identity provider."""

    def __init__(self, secret: str, issuer: str) -> None:
        if not secret:
            raise ValueError("signing secret is required")
        self.secret = secret
        self.issuer = issuer

    def _sign(self, signing_input: str) -> str:
        return _encode_segment(
            hmac.new(self.secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )

    def encode(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(
        self,
        subject: str,
        ttl_seconds: int,
        *,
        now: Optional[float] = None,
        extra: Optional[dict[str, Any]] = None,
    ) -> str:
        issued_at = int(time.time() if now is None else now)
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "token_use": "access",
            "jti": str(uuid.uuid4()),
            "iat": issued_at,
            "exp": issued_at + int(ttl_seconds),
        }
        if extra:
            payload.update(extra)
        return self.encode(payload)

    def verify(self, raw: str) -> bool:
        try:
            header_b64, payload_b64, sig_b64 = raw.split(".")
        except ValueError:
            return False
        header = _decode_json_segment(header_b64)
        # Reject alg confusion (none, RS256 with a shared secret, ...)
        if not header or header.get("alg") != "HS256":
            return False
        expected = self._sign(f"{header_b64}.{payload_b64}")
        return hmac.compare_digest(expected, sig_b64)

    def claims(self, raw: str) -> Optional[dict[str, Any]]:
        """Return the claims of a correctly signed token, else None."""
        if not self.verify(raw):
            return None
        return _decode_json_segment(raw.split(".")[1])


class SignatureVerifier(Protocol):
    blocking: bool

    def verify(self, raw: str) -> bool: ...


class HS256Verifier:
    blocking = False

    def __init__(self, signer: TokenSigner) -> None:
        self.signer = signer

    def verify(self, raw: str) -> bool:
        return self.signer.verify(raw)


class JWKSVerifier:
    """RS256 verification against a provider's published JSON Web Key Set.

    Expiry and audience are left to the codec and the provider;
    only the signature and issuer key are checked here. Key lookups hit the
    network on a cache miss, hence ``blocking``.
    """

    blocking = True

    def __init__(self, jwks_url: str, *, timeout: float = 10.0) -> None:
        self.jwks_url = jwks_url
        self._client = jwt.PyJWKClient(jwks_url, cache_keys=True, timeout=int(timeout))

    def verify(self, raw: str) -> bool:
        try:
            signing_key = self._client.get_signing_key_from_jwt(raw)
            jwt.decode(
                raw,
                signing_key.key,
                algorithms=["RS256"],
                options={"verify_exp": False, "verify_aud": False},
            )
        except jwt.PyJWTError as exc:
            logger.warning(
                "token_signature_rejected",
                token_preview=mask_secret(raw),
                error_type=type(exc).__name__,
            )
            return False
        return True


def build_verifier(settings: Settings) -> Optional[SignatureVerifier]:
    """Pick the signature verifier for the configured verification mode."""
    mode = settings.token_verification
    if mode == TokenVerification.AUTO:
        if settings.identity_backend == IdentityBackend.MEMORY:
            mode = TokenVerification.HS256
        elif settings.resolved_jwks_url:
            mode = TokenVerification.JWKS
        else:
            mode = TokenVerification.NONE
    if mode == TokenVerification.HS256:
        return HS256Verifier(TokenSigner(settings.token_signing_secret, settings.token_issuer))
    if mode == TokenVerification.JWKS:
        url = settings.resolved_jwks_url
        if not url:
            logger.warning("token_verification_unavailable", reason="no JWKS URL configured")
            return None
        return JWKSVerifier(url, timeout=settings.identity_timeout_seconds)
    logger.info("token_verification_disabled", trust_boundary="issuer and channel trusted")
    return None
