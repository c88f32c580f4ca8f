from __future__ import annotations

import time
from http.cookiejar import Cookie
from typing import Optional

import httpx

from pantrypal.config import COOKIE_BYTE_LIMIT
from pantrypal.storage.errors import CookieTooLarge


class CookieStore:
    """The HTTP-visible copy of the session token.

    Cookies written here live in an ``httpx.Cookies`` jar and ride along on
    every request the owning client sends, which is the only place the route
    guard can observe them. Expiry is wall-clock based because the jar
    evaluates it against the real time when attaching cookies.
    """

    def __init__(
        self,
        cookies: httpx.Cookies,
        name: str,
        *,
        domain: str = "",
        path: str = "/",
        secure: bool = False,
        same_site: str = "Lax",
        byte_limit: int = COOKIE_BYTE_LIMIT,
    ) -> None:
        self.cookies = cookies
        self.name = name
        self.domain = domain
        self.path = path
        self.secure = secure
        self.same_site = same_site
        self.byte_limit = byte_limit
        self.last_header: Optional[str] = None

    def size_of(self, value: str) -> int:
        return len(f"{self.name}={value}".encode("utf-8"))

    def capacity(self) -> int:
        """Largest value length (ASCII) that still fits under the limit."""
        return max(self.byte_limit - len(self.name.encode("utf-8")) - 1, 0)

    def _render(self, value: str, max_age: int) -> str:
        header = f"{self.name}={value}; Path={self.path}; Max-Age={max_age}; SameSite={self.same_site}"
        if self.secure:
            header += "; Secure"
        return header

    def _cookie(self, value: str, expires: int) -> Cookie:
        return Cookie(
            version=0,
            name=self.name,
            value=value,
            port=None,
            port_specified=False,
            domain=self.domain,
            domain_specified=bool(self.domain),
            domain_initial_dot=self.domain.startswith("."),
            path=self.path,
            path_specified=True,
            secure=self.secure,
            expires=expires,
            discard=False,
            comment=None,
            comment_url=None,
            rest={"SameSite": self.same_site},
        )

    def set(self, value: str, max_age: int) -> None:
        size = self.size_of(value)
        if size > self.byte_limit:
            raise CookieTooLarge(size, self.byte_limit)
        max_age = max(int(max_age), 0)
        self.cookies.jar.set_cookie(self._cookie(value, int(time.time()) + max_age))
        self.last_header = self._render(value, max_age)

    def get(self) -> Optional[str]:
        now = int(time.time())
        for cookie in self.cookies.jar:
            if (
                cookie.name == self.name
                and cookie.domain == self.domain
                and cookie.path == self.path
                and not cookie.is_expired(now)
            ):
                return cookie.value
        return None

    def expire(self) -> None:
        """Expire the cookie with Max-Age=0.

        An empty-but-present cookie is observably different from an absent
        one, so the value is replaced by an already expired entry that the
        jar then drops.
        """
        self.cookies.jar.set_cookie(self._cookie("", int(time.time()) - 1))
        self.cookies.jar.clear_expired_cookies()
        self.last_header = self._render("", 0)


__all__ = ["CookieStore"]
