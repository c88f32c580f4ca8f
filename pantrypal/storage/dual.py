from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pantrypal.config import COOKIE_MAX_AGE_CAP
from pantrypal.logging import get_logger, mask_secret
from pantrypal.service.tokens import TokenCodec
from pantrypal.storage.cookies import CookieStore
from pantrypal.storage.durable import DurableStore
from pantrypal.storage.errors import CookieTooLarge, StoreError

logger = get_logger(__name__)


@dataclass
class StoreWriteReport:
    """How far a dual write got. Never raised, only returned and logged."""

    durable_written: bool = False
    http_written: bool = False
    http_truncated: bool = False
    durable_verified: bool = False
    http_verified: bool = False
    max_age: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return self.durable_verified and self.http_verified

    @property
    def furthest_step(self) -> str:
        if self.consistent:
            return "verified"
        if self.http_written:
            return "http_written"
        if self.durable_written:
            return "durable_written"
        return "none"


@dataclass
class StoreClearReport:
    durable_cleared: bool = False
    http_cleared: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.durable_cleared and self.http_cleared


@dataclass(frozen=True)
class StoreSnapshot:
    durable: Optional[str]
    http: Optional[str]


class DualStore:
    """Keeps the session token in the durable store and the cookie jar.

    The durable store is written first and is the client's source of truth;
    the cookie is a best-effort projection for the route guard. Neither
    failure aborts the caller: partial results are reported and signalled in
    the log.
    """

    def __init__(
        self,
        durable: DurableStore,
        cookies: CookieStore,
        *,
        key: str = "session-token",
        max_age_cap: int = COOKIE_MAX_AGE_CAP,
        codec: Optional[TokenCodec] = None,
    ) -> None:
        self.durable = durable
        self.cookies = cookies
        self.key = key
        self.max_age_cap = min(max_age_cap, COOKIE_MAX_AGE_CAP)
        self.codec = codec or TokenCodec()

    def write(self, token: str, ttl_seconds: int) -> StoreWriteReport:
        report = StoreWriteReport(max_age=max(0, min(int(ttl_seconds), self.max_age_cap)))

        try:
            self.durable.set(self.key, token)
            report.durable_written = True
        except StoreError as exc:
            report.errors.append(f"durable: {exc.message}")
            logger.warning("session_durable_write_failed", error=exc.message)

        try:
            self.cookies.set(token, report.max_age)
            report.http_written = True
        except CookieTooLarge as exc:
            truncated = self.codec.truncate(token, self.cookies.capacity())
            logger.warning(
                "session_cookie_truncated",
                size=exc.size,
                limit=exc.limit,
                token_preview=mask_secret(token),
                consequence="route guard will treat the session as absent",
            )
            try:
                self.cookies.set(truncated, report.max_age)
                report.http_written = True
                report.http_truncated = True
            except CookieTooLarge as retry_exc:
                report.errors.append(f"http: {retry_exc.message}")
                logger.warning("session_cookie_write_failed", error=retry_exc.message)

        report.durable_verified = self._read_durable() == token
        report.http_verified = self.cookies.get() == token
        if not report.consistent:
            logger.warning(
                "session_store_inconsistent",
                durable_verified=report.durable_verified,
                http_verified=report.http_verified,
                http_truncated=report.http_truncated,
                furthest_step=report.furthest_step,
            )
        return report

    def clear(self) -> StoreClearReport:
        report = StoreClearReport()
        try:
            self.durable.delete(self.key)
        except StoreError as exc:
            report.errors.append(f"durable: {exc.message}")
            logger.warning("session_durable_clear_failed", error=exc.message)
        self.cookies.expire()

        report.durable_cleared = self._read_durable() is None
        report.http_cleared = self.cookies.get() is None
        if not report.complete:
            logger.warning(
                "session_store_clear_incomplete",
                durable_cleared=report.durable_cleared,
                http_cleared=report.http_cleared,
            )
        return report

    def read(self) -> Optional[str]:
        """Durable-store read, used at startup."""
        return self._read_durable()

    def snapshot(self) -> StoreSnapshot:
        return StoreSnapshot(durable=self._read_durable(), http=self.cookies.get())

    def _read_durable(self) -> Optional[str]:
        try:
            return self.durable.get(self.key)
        except StoreError as exc:
            logger.warning("session_durable_read_failed", error=exc.message)
            return None


__all__ = ["DualStore", "StoreWriteReport", "StoreClearReport", "StoreSnapshot"]
