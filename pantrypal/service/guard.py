from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional
from urllib.parse import urlencode

from pantrypal.config import Settings
from pantrypal.logging import get_logger, mask_secret
from pantrypal.service.tokens import SignatureVerifier, Token, TokenCodec

logger = get_logger(__name__)


@dataclass(frozen=True)
class GuardDecision:
    admitted: bool
    reason: str
    path: str
    redirect_to: Optional[str] = None
    token: Optional[Token] = None
    source: Optional[str] = None

    @property
    def authorization(self) -> Optional[str]:
        """Canonical downstream header value for admitted requests."""
        if not self.admitted or self.token is None:
            return None
        return f"Bearer {self.token.raw}"


def bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class RouteGuard:
    """Per-request gate in front of protected paths.

    Holds configuration only; every ``evaluate`` call reaches its decision
    from the request alone. No identity provider round trip is made: the
    token is checked for structure, subject, expiry and (when a verifier is
    configured) signature.
    """

    def __init__(
        self,
        codec: TokenCodec,
        *,
        entry_path: str = "/",
        public_paths: Iterable[str] = ("/",),
        static_prefixes: Iterable[str] = (),
        cookie_name: str = "session-token",
        verifier: Optional[SignatureVerifier] = None,
    ) -> None:
        self.codec = codec
        self.entry_path = entry_path
        self.public_paths = tuple(public_paths)
        self.static_prefixes = tuple(static_prefixes)
        self.cookie_name = cookie_name
        self.verifier = verifier

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        codec: Optional[TokenCodec] = None,
        verifier: Optional[SignatureVerifier] = None,
    ) -> "RouteGuard":
        return cls(
            codec or TokenCodec(),
            entry_path=settings.entry_path,
            public_paths=settings.public_paths,
            static_prefixes=settings.static_prefixes,
            cookie_name=settings.session_cookie_name,
            verifier=verifier,
        )

    @property
    def blocking(self) -> bool:
        return bool(self.verifier is not None and getattr(self.verifier, "blocking", False))

    def exemption(self, path: str) -> Optional[str]:
        if any(path.startswith(prefix) for prefix in self.static_prefixes):
            return "static"
        for route in self.public_paths:
            if path == route or (route != "/" and path.startswith(route.rstrip("/") + "/")):
                return "public"
        return None

    def redirect_target(self, path: str) -> str:
        return f"{self.entry_path}?{urlencode({'returnUrl': path})}"

    def extract(
        self, cookies: Mapping[str, str], authorization: Optional[str]
    ) -> tuple[Optional[str], Optional[str]]:
        raw = cookies.get(self.cookie_name)
        if raw:
            return raw, "cookie"
        raw = bearer_token(authorization)
        if raw:
            return raw, "bearer"
        return None, None

    def check(self, raw: Optional[str]) -> tuple[str, Optional[Token]]:
        if not raw:
            return "missing", None
        token = self.codec.decode(raw)
        if not isinstance(token, Token):
            return "malformed", None
        if token.subject is None:
            return "no_subject", None
        if not self.codec.is_live(token):
            return "expired", None
        if self.verifier is not None and not self.verifier.verify(raw):
            return "bad_signature", None
        return "admitted", token

    def evaluate(
        self,
        path: str,
        *,
        cookies: Optional[Mapping[str, str]] = None,
        authorization: Optional[str] = None,
    ) -> GuardDecision:
        exempt = self.exemption(path)
        if exempt:
            return GuardDecision(True, exempt, path)

        raw, source = self.extract(cookies or {}, authorization)
        reason, token = self.check(raw)
        if token is not None:
            return GuardDecision(True, reason, path, token=token, source=source)

        logger.info(
            "route_guard_redirect",
            path=path,
            reason=reason,
            source=source,
            token_preview=mask_secret(raw) if raw else None,
        )
        return GuardDecision(False, reason, path, redirect_to=self.redirect_target(path), source=source)


__all__ = ["RouteGuard", "GuardDecision", "bearer_token"]
