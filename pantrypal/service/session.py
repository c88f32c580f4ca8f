from __future__ import annotations

import asyncio
import functools
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from pantrypal.logging import get_logger
from pantrypal.service.tokens import Token, TokenCodec
from pantrypal.storage.dual import DualStore, StoreClearReport, StoreWriteReport

logger = get_logger(__name__)

TimerFactory = Callable[[float, Callable[[], None]], Any]


class SessionStatus(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"


@dataclass(frozen=True)
class SessionSnapshot:
    status: SessionStatus
    token: Optional[Token] = None


class SessionState:
    """The one shared "is someone logged in" fact of a running client.

    Only ``SessionContext`` publishes; every other component reads or
    subscribes.
    """

    def __init__(self) -> None:
        self._snapshot = SessionSnapshot(SessionStatus.UNAUTHENTICATED)
        self._subscribers: list[Callable[[SessionSnapshot], None]] = []

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    @property
    def status(self) -> SessionStatus:
        return self._snapshot.status

    @property
    def token(self) -> Optional[Token]:
        return self._snapshot.token

    @property
    def is_authenticated(self) -> bool:
        return self._snapshot.status == SessionStatus.AUTHENTICATED

    def subscribe(self, callback: Callable[[SessionSnapshot], None]) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, status: SessionStatus, token: Optional[Token] = None) -> None:
        self._snapshot = SessionSnapshot(status, token if status == SessionStatus.AUTHENTICATED else None)
        for callback in list(self._subscribers):
            try:
                callback(self._snapshot)
            except Exception as exc:
                logger.error(
                    "session_subscriber_failed",
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                    error=str(exc),
                )


def _default_call_later(delay: float, callback: Callable[[], None]) -> Any:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        timer = threading.Timer(delay, callback)
        timer.daemon = True
        timer.start()
        return timer
    return loop.call_later(delay, callback)


class SessionScheduler:
    """Single cancellable expiry check for the current session token.

    The timer fires ``margin_seconds`` before the token's expiry and
    re-validates before acting: a token with more than the margin left
    (timer fired early, clock moved) is simply re-armed.
    """

    def __init__(
        self,
        codec: TokenCodec,
        *,
        margin_seconds: int = 10,
        call_later: Optional[TimerFactory] = None,
    ) -> None:
        self.codec = codec
        self.margin_seconds = max(int(margin_seconds), 0)
        self._call_later = call_later or _default_call_later
        self._handle: Any = None
        self._generation = 0
        self._token: Optional[Token] = None
        self._on_expire: Optional[Callable[[], None]] = None

    @property
    def armed(self) -> bool:
        return self._handle is not None

    def arm(self, token: Token, now: float, on_expire: Callable[[], None]) -> None:
        self.cancel()
        remaining = self.codec.remaining_seconds(token, now)
        if remaining <= 0:
            on_expire()
            return
        delay = max(token.expires_at - now - self.margin_seconds, 0)
        self._token = token
        self._on_expire = on_expire
        self._handle = self._call_later(delay, functools.partial(self._fire, self._generation))
        logger.debug("session_expiry_armed", delay_seconds=delay, subject=token.subject)

    def cancel(self) -> None:
        self._generation += 1
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._token = None
        self._on_expire = None

    def _fire(self, generation: int) -> None:
        if generation != self._generation or self._token is None or self._on_expire is None:
            return
        token, on_expire = self._token, self._on_expire
        self._handle = None
        now = self.codec.now()
        if self.codec.is_live(token, now + self.margin_seconds):
            self.arm(token, now, on_expire)
            return
        self._token = None
        self._on_expire = None
        on_expire()


@dataclass(frozen=True)
class LoginReport:
    authenticated: bool
    store: Optional[StoreWriteReport] = None
    reason: Optional[str] = None


class SessionContext:
    """Stateful session façade for the rest of the client.

    Drives the dual store and the expiry scheduler and is the only writer
    of ``SessionState``.
    """

    def __init__(
        self,
        store: DualStore,
        *,
        state: Optional[SessionState] = None,
        codec: Optional[TokenCodec] = None,
        scheduler: Optional[SessionScheduler] = None,
        navigate: Optional[Callable[[str], None]] = None,
        entry_path: str = "/",
    ) -> None:
        self.store = store
        self.state = state or SessionState()
        self.codec = codec or store.codec
        self.scheduler = scheduler or SessionScheduler(self.codec)
        self.navigate = navigate
        self.entry_path = entry_path

    @property
    def status(self) -> SessionStatus:
        return self.state.status

    @property
    def token(self) -> Optional[Token]:
        return self.state.token

    @property
    def is_authenticated(self) -> bool:
        return self.state.is_authenticated

    def login(self, raw_token: str, ttl_seconds: int) -> LoginReport:
        token = self.codec.decode(raw_token)
        now = self.codec.now()
        if not isinstance(token, Token):
            logger.warning("session_login_rejected", reason="malformed")
            return LoginReport(False, reason="malformed")
        if not self.codec.is_live(token, now):
            logger.warning("session_login_rejected", reason="expired", subject=token.subject)
            return LoginReport(False, reason="expired")

        # Store before advertising so no reader sees AUTHENTICATED without a token
        report = self.store.write(raw_token, ttl_seconds)
        self.scheduler.arm(token, now, self._handle_expiry)
        if not self.scheduler.armed:
            return LoginReport(False, report, reason="expired")
        self.state.publish(SessionStatus.AUTHENTICATED, token)
        logger.info(
            "session_login",
            subject=token.subject,
            expires_in=self.codec.remaining_seconds(token, now),
            store_step=report.furthest_step,
        )
        return LoginReport(True, report)

    def logout(self, *, reason: str = "explicit") -> StoreClearReport:
        report = self.store.clear()
        self.scheduler.cancel()
        self.state.publish(SessionStatus.UNAUTHENTICATED)
        logger.info("session_logout", reason=reason, stores_cleared=report.complete)
        # Full navigation discards every in-memory copy of the session
        if self.navigate is not None:
            self.navigate(self.entry_path)
        return report

    def restore(self) -> SessionStatus:
        """Rebuild the session from the durable store at startup."""
        raw = self.store.read()
        if raw is None:
            self.state.publish(SessionStatus.UNAUTHENTICATED)
            return self.status

        token = self.codec.decode(raw)
        now = self.codec.now()
        if not isinstance(token, Token) or not self.codec.is_live(token, now):
            logger.info(
                "session_restore_discarded",
                reason="malformed" if not isinstance(token, Token) else "expired",
            )
            self.store.clear()
            self.state.publish(SessionStatus.UNAUTHENTICATED)
            return self.status

        # Re-project the cookie from the durable copy; it may have been lost
        self.store.write(raw, self.codec.remaining_seconds(token, now))
        self.scheduler.arm(token, now, self._handle_expiry)
        if self.scheduler.armed:
            self.state.publish(SessionStatus.AUTHENTICATED, token)
            logger.info("session_restored", subject=token.subject)
        return self.status

    def _handle_expiry(self) -> None:
        logger.info("session_expired", subject=self.token.subject if self.token else None)
        self.logout(reason="expired")


__all__ = [
    "SessionStatus",
    "SessionSnapshot",
    "SessionState",
    "SessionScheduler",
    "SessionContext",
    "LoginReport",
]
