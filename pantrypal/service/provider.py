from __future__ import annotations

import re
import secrets
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError

from pantrypal.config import Settings
from pantrypal.logging import get_logger
from pantrypal.service.tokens import TokenSigner

logger = get_logger(__name__)

NEW_PASSWORD_REQUIRED = "NEW_PASSWORD_REQUIRED"


class ProviderReason(str, Enum):
    """Closed set of failure reasons an identity provider may report."""

    NOT_FOUND = "not-found"
    NOT_AUTHORIZED = "not-authorized"
    INVALID_PARAMETER = "invalid-parameter"
    CODE_MISMATCH = "code-mismatch"
    CODE_EXPIRED = "code-expired"
    RATE_LIMITED = "rate-limited"
    POLICY_VIOLATION = "policy-violation"
    SERVICE_UNAVAILABLE = "service-unavailable"


class ProviderError(Exception):
    """A named rejection from the identity provider."""

    def __init__(self, reason: ProviderReason, message: str = "", *, upstream: Optional[str] = None):
        super().__init__(message or reason.value)
        self.reason = reason
        self.message = message or reason.value
        self.upstream = upstream

    @property
    def unsupported_attributes(self) -> bool:
        """True for the invalid-parameter rejection of non-writable attributes."""
        return (
            self.reason == ProviderReason.INVALID_PARAMETER
            and "attribute" in self.message.lower()
        )


@dataclass(frozen=True)
class AuthResult:
    token: str
    ttl_seconds: int


@dataclass(frozen=True)
class ChallengeResult:
    name: str
    handle: str
    parameters: dict = field(default_factory=dict)


@dataclass(frozen=True)
class DeliveryDetails:
    destination: Optional[str] = None
    medium: Optional[str] = None
    attribute: Optional[str] = None


class IdentityProvider(Protocol):
    """Remote identity service contract used by the broker.

    Every method raises ``ProviderError`` for named rejections and
    ``ConfigurationError`` when the client settings are unusable.
    """

    async def initiate_auth(
        self, username: str, password: str
    ) -> Union[AuthResult, ChallengeResult]: ...

    async def respond_to_challenge(
        self, username: str, handle: str, attributes: dict[str, str]
    ) -> Optional[AuthResult]: ...

    async def request_password_reset(self, identifier: str) -> DeliveryDetails: ...

    async def confirm_password_reset(
        self, identifier: str, code: str, new_password: str
    ) -> None: ...

    async def update_attribute(self, token: str, name: str, value: str) -> None: ...

    async def request_attribute_verification(
        self, token: str, name: str
    ) -> DeliveryDetails: ...

    async def aclose(self) -> None: ...


_PASSWORD_RULES = (
    (re.compile(r".{8,}"), "at least 8 characters"),
    (re.compile(r"[a-z]"), "a lowercase letter"),
    (re.compile(r"[A-Z]"), "an uppercase letter"),
    (re.compile(r"[0-9]"), "a number"),
)

# Attributes the provider manages itself and refuses to take from clients
_READ_ONLY_ATTRIBUTES = frozenset({"sub", "email_verified", "phone_number_verified"})
_VERIFIABLE_ATTRIBUTES = frozenset({"email", "phone_number"})


def password_policy_violations(password: str) -> list[str]:
    return [label for pattern, label in _PASSWORD_RULES if not pattern.search(password or "")]


def mask_destination(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    if "@" in value:
        local, _, domain = value.partition("@")
        return f"{local[:1]}***@{domain[:1]}***"
    return f"***{value[-4:]}"


@dataclass
class _UserRecord:
    username: str
    password_hash: str
    sub: str
    attributes: dict[str, str] = field(default_factory=dict)
    must_rotate: bool = False


class MemoryIdentityProvider:
    """In-process identity provider for development, demos and tests.

    Mirrors the behavior of the hosted provider closely enough for every
    broker path: forced rotation with single-use handles, reset codes with
    a delivery window, reset rate limiting, password policy and provider
    managed attributes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
        issue_token_after_rotation: bool = True,
    ) -> None:
        self.settings = settings
        self.clock = clock
        self.issue_token_after_rotation = issue_token_after_rotation
        self.signer = TokenSigner(settings.token_signing_secret, settings.token_issuer)
        self._hasher = PasswordHasher(type=Type.ID)
        self._lock = threading.Lock()
        self._users: dict[str, _UserRecord] = {}
        self._challenges: dict[str, tuple[str, float]] = {}
        self._reset_codes: dict[str, tuple[str, float]] = {}
        self._reset_requests: dict[str, list[float]] = {}
        self._verification_codes: dict[tuple[str, str], str] = {}
        # Out-of-band deliveries, newest last: (channel, username, code)
        self.outbox: list[tuple[str, str, str]] = []
        self.fail_verification_delivery = False

    def add_user(
        self,
        username: str,
        password: str,
        *,
        email: Optional[str] = None,
        must_rotate: bool = False,
    ) -> str:
        record = _UserRecord(
            username=username,
            password_hash=self._hasher.hash(password),
            sub=str(uuid.uuid4()),
            must_rotate=must_rotate,
        )
        if email:
            record.attributes["email"] = email
            record.attributes["email_verified"] = "false"
        with self._lock:
            self._users[username] = record
        return record.sub

    def user_attributes(self, username: str) -> dict[str, str]:
        return dict(self._users[username].attributes)

    def last_code(self, username: str, channel: str = "reset") -> Optional[str]:
        for sent_channel, sent_user, code in reversed(self.outbox):
            if sent_user == username and sent_channel == channel:
                return code
        return None

    def _find(self, identifier: str) -> Optional[_UserRecord]:
        record = self._users.get(identifier)
        if record:
            return record
        for candidate in self._users.values():
            if candidate.attributes.get("email", "").lower() == identifier.lower():
                return candidate
        return None

    def _verify_password(self, record: _UserRecord, password: str) -> bool:
        try:
            return self._hasher.verify(record.password_hash, password)
        except (VerificationError, InvalidHashError):
            return False

    def _enforce_policy(self, password: str) -> None:
        missing = password_policy_violations(password)
        if missing:
            raise ProviderError(
                ProviderReason.POLICY_VIOLATION,
                "Password does not conform to policy: needs " + ", ".join(missing),
            )

    def _issue(self, record: _UserRecord) -> AuthResult:
        ttl = self.settings.token_ttl_seconds
        token = self.signer.issue(
            record.sub, ttl, now=self.clock(), extra={"username": record.username}
        )
        return AuthResult(token=token, ttl_seconds=ttl)

    def _subject_from_token(self, token: str) -> _UserRecord:
        claims = self.signer.claims(token)
        exp = claims.get("exp") if claims else None
        if not claims or not isinstance(exp, (int, float)) or exp <= self.clock():
            raise ProviderError(ProviderReason.NOT_AUTHORIZED, "Access Token has expired or is invalid")
        for record in self._users.values():
            if record.sub == claims.get("sub"):
                return record
        raise ProviderError(ProviderReason.NOT_AUTHORIZED, "User does not exist")

    async def initiate_auth(self, username: str, password: str) -> Union[AuthResult, ChallengeResult]:
        record = self._users.get(username)
        if not record or not self._verify_password(record, password):
            raise ProviderError(ProviderReason.NOT_AUTHORIZED, "Incorrect username or password.")
        if record.must_rotate:
            handle = secrets.token_urlsafe(48)
            with self._lock:
                self._challenges[handle] = (username, self.clock() + self.settings.challenge_ttl_seconds)
            return ChallengeResult(name=NEW_PASSWORD_REQUIRED, handle=handle)
        return self._issue(record)

    async def respond_to_challenge(
        self, username: str, handle: str, attributes: dict[str, str]
    ) -> Optional[AuthResult]:
        with self._lock:
            stored = self._challenges.get(handle)
        if not stored or stored[0] != username or stored[1] <= self.clock():
            raise ProviderError(
                ProviderReason.NOT_AUTHORIZED, "Invalid session for the user, session is expired."
            )
        rejected = sorted(
            name for name in attributes if name not in {"username", "new_password"} and name in _READ_ONLY_ATTRIBUTES
        )
        if rejected:
            raise ProviderError(
                ProviderReason.INVALID_PARAMETER,
                "Invalid attributes given, " + ", ".join(rejected) + " cannot be set",
            )
        new_password = attributes.get("new_password", "")
        self._enforce_policy(new_password)

        record = self._users[username]
        with self._lock:
            # Handles are single use
            self._challenges.pop(handle, None)
            record.password_hash = self._hasher.hash(new_password)
            record.must_rotate = False
            for name, value in attributes.items():
                if name not in {"username", "new_password"}:
                    record.attributes[name] = value
        if not self.issue_token_after_rotation:
            return None
        return self._issue(record)

    async def request_password_reset(self, identifier: str) -> DeliveryDetails:
        now = self.clock()
        window = self.settings.reset_rate_limit_window_seconds
        with self._lock:
            recent = [t for t in self._reset_requests.get(identifier, []) if t > now - window]
            if len(recent) >= self.settings.reset_rate_limit_per_window:
                raise ProviderError(
                    ProviderReason.RATE_LIMITED, "Attempt limit exceeded, please try after some time."
                )
            recent.append(now)
            self._reset_requests[identifier] = recent
        record = self._find(identifier)
        if not record:
            raise ProviderError(ProviderReason.NOT_FOUND, "Username/client id combination not found.")
        code = f"{secrets.randbelow(10**6):06d}"
        with self._lock:
            self._reset_codes[record.username] = (code, now + self.settings.reset_code_ttl_seconds)
        self.outbox.append(("reset", record.username, code))
        email = record.attributes.get("email")
        return DeliveryDetails(
            destination=mask_destination(email), medium="EMAIL" if email else None, attribute="email"
        )

    async def confirm_password_reset(self, identifier: str, code: str, new_password: str) -> None:
        record = self._find(identifier)
        if not record:
            raise ProviderError(ProviderReason.NOT_FOUND, "Username/client id combination not found.")
        with self._lock:
            stored = self._reset_codes.get(record.username)
        if not stored:
            raise ProviderError(ProviderReason.CODE_EXPIRED, "Invalid code provided, please request a code again.")
        expected, expires_at = stored
        if expires_at <= self.clock():
            with self._lock:
                self._reset_codes.pop(record.username, None)
            raise ProviderError(ProviderReason.CODE_EXPIRED, "Invalid code provided, please request a code again.")
        if not secrets.compare_digest(expected, code or ""):
            raise ProviderError(ProviderReason.CODE_MISMATCH, "Invalid verification code provided, please try again.")
        self._enforce_policy(new_password)
        with self._lock:
            self._reset_codes.pop(record.username, None)
            record.password_hash = self._hasher.hash(new_password)
            record.must_rotate = False

    async def update_attribute(self, token: str, name: str, value: str) -> None:
        record = self._subject_from_token(token)
        if name in _READ_ONLY_ATTRIBUTES:
            raise ProviderError(ProviderReason.INVALID_PARAMETER, f"Invalid attributes given, {name} cannot be set")
        with self._lock:
            record.attributes[name] = value
            if name in _VERIFIABLE_ATTRIBUTES:
                record.attributes[f"{name}_verified"] = "false"

    async def request_attribute_verification(self, token: str, name: str) -> DeliveryDetails:
        record = self._subject_from_token(token)
        if name not in _VERIFIABLE_ATTRIBUTES or name not in record.attributes:
            raise ProviderError(ProviderReason.INVALID_PARAMETER, f"Attribute {name} cannot be verified")
        if self.fail_verification_delivery:
            raise ProviderError(ProviderReason.RATE_LIMITED, "Attempt limit exceeded, please try after some time.")
        code = f"{secrets.randbelow(10**6):06d}"
        self._verification_codes[(record.username, name)] = code
        self.outbox.append(("verify", record.username, code))
        return DeliveryDetails(
            destination=mask_destination(record.attributes[name]),
            medium="EMAIL" if name == "email" else "SMS",
            attribute=name,
        )

    async def aclose(self) -> None:
        return None


__all__ = [
    "NEW_PASSWORD_REQUIRED",
    "ProviderReason",
    "ProviderError",
    "AuthResult",
    "ChallengeResult",
    "DeliveryDetails",
    "IdentityProvider",
    "MemoryIdentityProvider",
    "password_policy_violations",
    "mask_destination",
]
