"""httpx client side of the session subsystem.

``SessionClient`` plays the part of the running application: it owns the
single ``SessionState``, the dual token store (durable file plus the cookie
jar that rides along on every request) and the sign-in flow, and talks to
the FastAPI service through ``RemoteIdentityBroker``.
"""

from __future__ import annotations

from typing import Any, Callable, Optional
from urllib.parse import parse_qs, urlsplit

import httpx

from pantrypal.config import Settings, get_settings
from pantrypal.logging import get_logger
from pantrypal.service.diagnostics import store_report
from pantrypal.service.flows import FlowResult, FlowState, LoginFlow
from pantrypal.service.identity import (
    ChallengeKind,
    ChallengeRequired,
    Outcome,
    PartialSuccess,
    Rejected,
    ServiceUnavailable,
    Success,
)
from pantrypal.service.provider import DeliveryDetails, ProviderReason
from pantrypal.service.session import (
    SessionContext,
    SessionScheduler,
    SessionState,
    SessionStatus,
    TimerFactory,
)
from pantrypal.service.tokens import TokenCodec
from pantrypal.storage.cookies import CookieStore
from pantrypal.storage.dual import DualStore
from pantrypal.storage.durable import DurableStore, FileDurableStore

logger = get_logger(__name__)


def _outcome_from_response(response: httpx.Response) -> Outcome:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    if response.is_success and body.get("status") == "ok":
        data = body.get("data") or {}
        message = data.get("message", "")
        outcome = data.get("outcome")
        if outcome == "challenge_required":
            return ChallengeRequired(ChallengeKind(data.get("challenge") or "NEW_PASSWORD"), data.get("session") or "", message)
        if outcome == "partially_updated":
            return PartialSuccess(
                completed_steps=tuple(data.get("completed_steps") or ()),
                failed_step=data.get("failed_step") or "",
                reason=ProviderReason(data.get("reason") or ProviderReason.SERVICE_UNAVAILABLE.value),
                message=message,
            )
        delivery = data.get("delivery")
        return Success(
            token=data.get("access_token"),
            ttl_seconds=data.get("expires_in"),
            message=message,
            delivery=DeliveryDetails(**delivery) if isinstance(delivery, dict) else None,
        )

    error = body.get("error") or {}
    details = error.get("details") if isinstance(error.get("details"), dict) else {}
    message = error.get("message") or f"HTTP {response.status_code}"
    reason = details.get("reason")
    if reason in {r.value for r in ProviderReason} and reason != ProviderReason.SERVICE_UNAVAILABLE.value:
        return Rejected(ProviderReason(reason), message)
    if error.get("code") == "validation_error":
        # Request body refused before reaching the provider
        return Rejected(ProviderReason.INVALID_PARAMETER, "Please check the details you entered and try again.")
    if response.status_code == 401:
        return Rejected(ProviderReason.NOT_AUTHORIZED, message)
    if details.get("kind") == "configuration":
        return ServiceUnavailable(detail="identity provider misconfigured", kind="configuration", message=message)
    if response.status_code == 503:
        return ServiceUnavailable(detail="identity provider unavailable", message=message)
    return ServiceUnavailable(detail=f"unexpected response {response.status_code}")


class RemoteIdentityBroker:
    """Identity broker that runs every exchange through the HTTP API."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http

    async def _post(self, path: str, payload: dict[str, Any], headers: Optional[dict[str, str]] = None) -> Outcome:
        try:
            response = await self.http.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("identity_request_failed", path=path, error_type=type(exc).__name__)
            return ServiceUnavailable(detail=type(exc).__name__)
        if response.is_redirect:
            # The guard bounced the request: the session is gone
            return Rejected(ProviderReason.NOT_AUTHORIZED, "Your session has expired. Please sign in again.")
        return _outcome_from_response(response)

    async def login(self, username: str, password: str) -> Outcome:
        return await self._post("/api/auth/login", {"username": username, "password": password})

    async def complete_rotation(
        self, username: str, new_password: str, handle: str, email: Optional[str] = None
    ) -> Outcome:
        payload = {"username": username, "new_password": new_password, "session": handle, "email": email}
        return await self._post("/api/auth/challenge/new-password", payload)

    async def request_reset(self, identifier: str) -> Outcome:
        return await self._post("/api/auth/reset/request", {"identifier": identifier})

    async def confirm_reset(self, identifier: str, code: str, new_password: str) -> Outcome:
        payload = {"identifier": identifier, "code": code, "new_password": new_password}
        return await self._post("/api/auth/reset/confirm", payload)

    async def update_contact_attribute(self, token: str, attribute: str, value: str) -> Outcome:
        return await self._post(
            "/api/account/contact",
            {"attribute": attribute, "value": value},
            headers={"Authorization": f"Bearer {token}"},
        )


class SessionClient:
    """A running client of the session service.

    ``navigate`` models full navigation: the sign-in flow and any transient
    challenge or reset state are discarded and rebuilt, the way a page load
    discards in-memory state.
    """

    def __init__(
        self,
        base_url: str,
        *,
        settings: Optional[Settings] = None,
        durable: Optional[DurableStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        call_later: Optional[TimerFactory] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.http = httpx.AsyncClient(
            base_url=base_url,
            transport=transport,
            follow_redirects=False,
            timeout=self.settings.identity_timeout_seconds,
        )
        self.codec = TokenCodec(clock) if clock else TokenCodec()
        cookies = CookieStore(
            self.http.cookies,
            self.settings.session_cookie_name,
            secure=self.settings.cookie_secure,
            byte_limit=self.settings.cookie_byte_limit,
        )
        self.store = DualStore(
            durable or FileDurableStore(self.settings.durable_store_path),
            cookies,
            key=self.settings.durable_store_key,
            max_age_cap=self.settings.cookie_max_age_cap_seconds,
            codec=self.codec,
        )
        self.state = SessionState()
        self.session = SessionContext(
            self.store,
            state=self.state,
            codec=self.codec,
            scheduler=SessionScheduler(
                self.codec,
                margin_seconds=self.settings.expiry_check_margin_seconds,
                call_later=call_later,
            ),
            navigate=self.navigate,
            entry_path=self.settings.entry_path,
        )
        self.broker = RemoteIdentityBroker(self.http)
        self.location = self.settings.entry_path
        self.return_target: Optional[str] = None
        self.navigations = 0
        self.flow = LoginFlow(self.broker, self.session)

    async def __aenter__(self) -> "SessionClient":
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    def start(self) -> SessionStatus:
        """Restore the session from the durable store, as on a fresh load."""
        status = self.session.restore()
        self._reload_flow()
        if status == SessionStatus.AUTHENTICATED:
            self.location = self.flow.default_target
        return status

    def navigate(self, path: str) -> None:
        logger.info("client_navigate", path=path)
        self.location = path
        self.navigations += 1
        self._reload_flow()

    def _reload_flow(self) -> None:
        self.flow.close()
        self.flow = LoginFlow(self.broker, self.session)

    def _follow(self, result: FlowResult) -> FlowResult:
        if result.navigate_to:
            self.navigate(result.navigate_to)
        return result

    async def login(self, username: str, password: str, *, return_target: Optional[str] = None) -> FlowResult:
        """Sign in; without an explicit target the last guard ``returnUrl`` is used."""
        target = return_target or self.return_target
        result = self._follow(await self.flow.submit_login(username, password, return_target=target))
        if result.state == FlowState.AUTHENTICATED:
            self.return_target = None
        return result

    async def submit_new_password(
        self, new_password: str, confirmation: str, *, email: Optional[str] = None
    ) -> FlowResult:
        result = self._follow(await self.flow.submit_new_password(new_password, confirmation, email=email))
        if result.state == FlowState.AUTHENTICATED:
            self.return_target = None
        return result

    async def request_reset(self, identifier: str) -> FlowResult:
        return await self.flow.request_reset(identifier)

    async def confirm_reset(self, code: str, new_password: str, confirmation: str) -> FlowResult:
        return await self.flow.confirm_reset(code, new_password, confirmation)

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request carrying the session cookie.

        A guard redirect seen while the client believes it is signed in
        means the session is no longer valid, so the client signs out.
        """
        response = await self.http.request(method, path, **kwargs)
        return_url = self._guard_return_url(response) if response.is_redirect else None
        if return_url is not None and self.session.is_authenticated:
            logger.warning("client_session_rejected_by_guard", path=path)
            self.session.logout(reason="rejected_by_guard")
            self.return_target = return_url
        return response

    def _guard_return_url(self, response: httpx.Response) -> Optional[str]:
        location = urlsplit(response.headers.get("location", ""))
        if location.path != self.settings.entry_path:
            return None
        values = parse_qs(location.query).get("returnUrl")
        return values[0] if values else None

    async def update_contact(self, attribute: str, value: str) -> Outcome:
        token = self.session.token
        if token is None:
            return Rejected(ProviderReason.NOT_AUTHORIZED, "Sign in to update your account.")
        outcome = await self.broker.update_contact_attribute(token.raw, attribute, value)
        if isinstance(outcome, Rejected) and outcome.reason == ProviderReason.NOT_AUTHORIZED:
            self.session.logout(reason="rejected_by_provider")
        return outcome

    async def logout(self) -> None:
        self.session.logout()
        try:
            await self.http.post("/api/auth/logout")
        except httpx.HTTPError as exc:
            # Local copies are already gone; the server call only expires browser cookies
            logger.warning("client_logout_notify_failed", error_type=type(exc).__name__)

    def diagnose(self) -> dict[str, Any]:
        report = store_report(self.store.snapshot(), self.codec)
        report["session"] = self.status.value
        report["flow"] = self.flow.state.value
        return report

    async def aclose(self) -> None:
        self.session.scheduler.cancel()
        self.flow.close()
        await self.http.aclose()


__all__ = ["SessionClient", "RemoteIdentityBroker"]
