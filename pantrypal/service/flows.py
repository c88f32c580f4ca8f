from __future__ import annotations

import dataclasses
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional, Protocol, TypeVar
from urllib.parse import urlsplit

from pantrypal.logging import get_logger
from pantrypal.service.errors import ConflictError, ExchangeInProgressError
from pantrypal.service.identity import (
    ChallengeRequired,
    Outcome,
    Rejected,
    Success,
    check_new_password,
)
from pantrypal.service.provider import ProviderReason
from pantrypal.service.session import SessionContext, SessionSnapshot, SessionStatus

logger = get_logger(__name__)

DEFAULT_LANDING = "/home"

T = TypeVar("T")


class Broker(Protocol):
    async def login(self, username: str, password: str) -> Outcome: ...

    async def complete_rotation(
        self, username: str, new_password: str, handle: str, email: Optional[str] = None
    ) -> Outcome: ...

    async def request_reset(self, identifier: str) -> Outcome: ...

    async def confirm_reset(self, identifier: str, code: str, new_password: str) -> Outcome: ...


class FlowState(str, Enum):
    ENTRY = "entry"
    ROTATING = "rotating"
    RESET_PENDING_CODE = "reset_pending_code"
    AUTHENTICATED = "authenticated"


_TRANSIENT = frozenset({FlowState.ROTATING, FlowState.RESET_PENDING_CODE})


@dataclass(frozen=True)
class ChallengeState:
    username: str
    handle: str = field(repr=False)
    return_target: Optional[str] = None


@dataclass(frozen=True)
class ResetState:
    identifier: str
    delivered_code_expected: bool = False


@dataclass(frozen=True)
class FlowResult:
    outcome: Outcome
    state: FlowState
    navigate_to: Optional[str] = None

    @property
    def message(self) -> str:
        return self.outcome.message


def safe_return_target(target: Optional[str], default: str = DEFAULT_LANDING) -> str:
    """Only same-origin absolute paths are followed after login."""
    if not target or not target.startswith("/") or target.startswith("//") or "\\" in target:
        return default
    parts = urlsplit(target)
    if parts.scheme or parts.netloc:
        return default
    return target


class LoginFlow:
    """State machine behind the sign-in surface.

    ENTRY and AUTHENTICATED are the only persistent states. ROTATING holds a
    ``ChallengeState`` and RESET_PENDING_CODE a ``ResetState``; both live in
    memory only and are dropped by ``abandon()`` or a client reload.
    """

    def __init__(
        self,
        broker: Broker,
        session: SessionContext,
        *,
        default_target: str = DEFAULT_LANDING,
    ) -> None:
        self.broker = broker
        self.session = session
        self.default_target = default_target
        self.challenge: Optional[ChallengeState] = None
        self.reset: Optional[ResetState] = None
        self._pending = False
        self.state = FlowState.AUTHENTICATED if session.is_authenticated else FlowState.ENTRY
        self._unsubscribe = session.state.subscribe(self._on_session_change)

    @property
    def pending(self) -> bool:
        return self._pending

    def close(self) -> None:
        self._unsubscribe()

    def _on_session_change(self, snapshot: SessionSnapshot) -> None:
        if snapshot.status == SessionStatus.UNAUTHENTICATED and self.state == FlowState.AUTHENTICATED:
            self._enter(FlowState.ENTRY)
        elif snapshot.status == SessionStatus.AUTHENTICATED:
            self._enter(FlowState.AUTHENTICATED)

    def _enter(self, state: FlowState) -> None:
        if state != FlowState.ROTATING:
            self.challenge = None
        if state != FlowState.RESET_PENDING_CODE:
            self.reset = None
        if state != self.state:
            logger.debug("login_flow_transition", from_state=self.state.value, to_state=state.value)
        self.state = state

    def _require(self, *states: FlowState) -> None:
        if self.state not in states:
            raise ConflictError(
                f"not allowed while {self.state.value}",
                detail={"state": self.state.value},
            )

    def _held(self, value: Optional[T], state: FlowState) -> T:
        if value is None:
            raise ConflictError(
                f"no {state.value} state is held",
                detail={"state": self.state.value},
            )
        return value

    @asynccontextmanager
    async def _exchange(self) -> AsyncIterator[None]:
        # Resubmission is refused, never queued
        if self._pending:
            raise ExchangeInProgressError("an identity exchange is already in progress")
        self._pending = True
        try:
            yield
        finally:
            self._pending = False

    def _start_session(self, outcome: Success, target: Optional[str]) -> FlowResult:
        report = self.session.login(outcome.token or "", outcome.ttl_seconds or 0)
        if not report.authenticated:
            # Integrity failure: treated as "not signed in", never as an error detail
            self._enter(FlowState.ENTRY)
            return FlowResult(
                Rejected(ProviderReason.NOT_AUTHORIZED, "Sign-in could not be completed. Please sign in again."),
                self.state,
            )
        self._enter(FlowState.AUTHENTICATED)
        return FlowResult(outcome, self.state, navigate_to=safe_return_target(target, self.default_target))

    async def submit_login(
        self, username: str, password: str, *, return_target: Optional[str] = None
    ) -> FlowResult:
        self._require(FlowState.ENTRY)
        async with self._exchange():
            outcome = await self.broker.login(username, password)

        if isinstance(outcome, Success) and outcome.token:
            return self._start_session(outcome, return_target)
        if isinstance(outcome, ChallengeRequired):
            # A challenge never creates a session
            self.challenge = ChallengeState(username.strip(), outcome.handle, return_target)
            self._enter(FlowState.ROTATING)
        return FlowResult(outcome, self.state)

    async def submit_new_password(
        self,
        new_password: str,
        confirmation: str,
        *,
        email: Optional[str] = None,
    ) -> FlowResult:
        self._require(FlowState.ROTATING)
        problem = check_new_password(new_password, confirmation)
        if problem:
            return FlowResult(Rejected(ProviderReason.INVALID_PARAMETER, problem), self.state)

        challenge = self._held(self.challenge, FlowState.ROTATING)
        async with self._exchange():
            outcome = await self.broker.complete_rotation(
                challenge.username, new_password, challenge.handle, email
            )

        if isinstance(outcome, Success):
            if outcome.token:
                return self._start_session(outcome, challenge.return_target)
            # Rotated but no token: sign in again with the new password
            self._enter(FlowState.ENTRY)
        elif isinstance(outcome, Rejected) and outcome.reason == ProviderReason.NOT_AUTHORIZED:
            # The single-use handle is spent or expired
            self._enter(FlowState.ENTRY)
        return FlowResult(outcome, self.state)

    async def request_reset(self, identifier: str) -> FlowResult:
        self._require(FlowState.ENTRY, FlowState.RESET_PENDING_CODE)
        async with self._exchange():
            outcome = await self.broker.request_reset(identifier)
        if isinstance(outcome, Success):
            self.reset = ResetState(identifier.strip(), delivered_code_expected=True)
            self._enter(FlowState.RESET_PENDING_CODE)
        return FlowResult(outcome, self.state)

    async def confirm_reset(self, code: str, new_password: str, confirmation: str) -> FlowResult:
        self._require(FlowState.RESET_PENDING_CODE)
        problem = check_new_password(new_password, confirmation)
        if problem:
            return FlowResult(Rejected(ProviderReason.INVALID_PARAMETER, problem), self.state)

        reset = self._held(self.reset, FlowState.RESET_PENDING_CODE)
        async with self._exchange():
            outcome = await self.broker.confirm_reset(reset.identifier, code, new_password)

        if isinstance(outcome, Success):
            self._enter(FlowState.ENTRY)
        elif isinstance(outcome, Rejected) and outcome.reason == ProviderReason.CODE_EXPIRED:
            # A fresh code has to be requested before confirming again
            self.reset = dataclasses.replace(reset, delivered_code_expected=False)
        return FlowResult(outcome, self.state)

    def abandon(self) -> FlowState:
        """Leave ROTATING or RESET_PENDING_CODE with no side effects."""
        if self.state in _TRANSIENT:
            logger.info("login_flow_abandoned", state=self.state.value)
            self._enter(FlowState.ENTRY)
        return self.state

    def logout(self) -> None:
        self.session.logout()


__all__ = [
    "FlowState",
    "ChallengeState",
    "ResetState",
    "FlowResult",
    "LoginFlow",
    "safe_return_target",
    "DEFAULT_LANDING",
]
