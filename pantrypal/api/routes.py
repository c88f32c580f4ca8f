from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from pantrypal.api.schemas import (
    AuthResponse,
    ContactUpdateRequest,
    ContactUpdateResponse,
    DeliveryResponse,
    Envelope,
    HealthResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    NewPasswordChallengeRequest,
    ResetConfirmRequest,
    ResetRequest,
)
from pantrypal.logging import get_logger
from pantrypal.service.diagnostics import ALLOWED_CLAIMS, config_report, request_report
from pantrypal.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ServiceUnavailableError,
    ValidationError,
)
from pantrypal.service.guard import bearer_token
from pantrypal.service.identity import (
    ChallengeRequired,
    Outcome,
    PartialSuccess,
    Rejected,
    ServiceUnavailable,
    Success,
)
from pantrypal.service.provider import ProviderReason
from pantrypal.service.runtime import get_runtime
from pantrypal.service.tokens import Token

logger = get_logger(__name__)

router = APIRouter()

_REJECTION_ERRORS: dict[ProviderReason, type[ServiceError]] = {
    ProviderReason.INVALID_PARAMETER: ValidationError,
    ProviderReason.CODE_MISMATCH: ValidationError,
    ProviderReason.CODE_EXPIRED: ValidationError,
    ProviderReason.POLICY_VIOLATION: ValidationError,
    ProviderReason.NOT_AUTHORIZED: AuthenticationError,
    ProviderReason.NOT_FOUND: NotFoundError,
    ProviderReason.RATE_LIMITED: RateLimitedError,
}


def _outcome_error(outcome: Outcome) -> ServiceError:
    if isinstance(outcome, Rejected):
        error_cls = _REJECTION_ERRORS.get(outcome.reason, ValidationError)
        return error_cls(outcome.message, detail={"reason": outcome.reason.value})
    if isinstance(outcome, ServiceUnavailable) and outcome.kind == "configuration":
        # Offending settings are in the log, not in the response
        return ServerError(outcome.message, detail={"kind": "configuration"})
    if isinstance(outcome, ServiceUnavailable):
        return ServiceUnavailableError(outcome.message, detail={"kind": outcome.kind})
    logger.error("unexpected_identity_outcome", outcome=type(outcome).__name__)
    return ServerError("unexpected identity outcome")


def _session_response(outcome: Success) -> AuthResponse:
    return AuthResponse(
        outcome="authenticated",
        message=outcome.message,
        access_token=outcome.token,
        token_type="Bearer",
        expires_in=outcome.ttl_seconds,
    )


def get_session_token(authorization: Optional[str] = Header(None)) -> Token:
    """Token placed in the canonical Authorization header by the route guard."""
    runtime = get_runtime()
    raw = bearer_token(authorization)
    token = runtime.codec.decode(raw) if raw else None
    if not isinstance(token, Token) or not runtime.codec.is_live(token):
        raise AuthenticationError("authentication required")
    return token


def _require_diagnostics() -> None:
    if not get_runtime().settings.diagnostics_enabled:
        raise NotFoundError("not found")


@router.get("/healthz", response_model=Envelope, tags=["health"])
async def healthz():
    return Envelope(status="ok", data=HealthResponse(status="healthy"))


@router.post("/api/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Exchange a username and password for a session token.

    A forced password rotation is not a failure: the response carries the
    single-use challenge session instead of a token.
    """
    runtime = get_runtime()
    outcome = await runtime.broker.login(body.username, body.password)
    if isinstance(outcome, Success):
        return Envelope(status="ok", data=_session_response(outcome))
    if isinstance(outcome, ChallengeRequired):
        return Envelope(
            status="ok",
            data=AuthResponse(
                outcome="challenge_required",
                message=outcome.message,
                challenge=outcome.kind.value,
                session=outcome.handle,
            ),
        )
    raise _outcome_error(outcome)


@router.post("/api/auth/challenge/new-password", response_model=Envelope, tags=["auth"])
async def complete_new_password(body: NewPasswordChallengeRequest):
    runtime = get_runtime()
    outcome = await runtime.broker.complete_rotation(
        body.username, body.new_password, body.session, body.email
    )
    if isinstance(outcome, Success):
        if outcome.token:
            return Envelope(status="ok", data=_session_response(outcome))
        return Envelope(status="ok", data=AuthResponse(outcome="completed", message=outcome.message))
    raise _outcome_error(outcome)


@router.post("/api/auth/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(body: ResetRequest):
    runtime = get_runtime()
    outcome = await runtime.broker.request_reset(body.identifier)
    if isinstance(outcome, Success):
        # Same response whether or not the account exists
        return Envelope(status="ok", data=MessageResponse(message=outcome.message))
    raise _outcome_error(outcome)


@router.post("/api/auth/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(body: ResetConfirmRequest):
    runtime = get_runtime()
    outcome = await runtime.broker.confirm_reset(body.identifier, body.code, body.new_password)
    if isinstance(outcome, Success):
        return Envelope(status="ok", data=MessageResponse(message=outcome.message))
    raise _outcome_error(outcome)


@router.post("/api/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    """Expire the browser-visible session cookie.

    Tokens are not revoked at the provider; clients clear their own copies.
    """
    settings = get_runtime().settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        samesite="lax",
    )
    return Envelope(status="ok", data=MessageResponse(message="Signed out."))


@router.post("/api/account/contact", response_model=Envelope, tags=["account"])
async def update_contact(body: ContactUpdateRequest, token: Token = Depends(get_session_token)):
    """Update a contact attribute and send a verification code for it.

    When the code cannot be sent the update still stands and the response
    reports a partial update.
    """
    runtime = get_runtime()
    outcome = await runtime.broker.update_contact_attribute(token.raw, body.attribute, body.value)
    if isinstance(outcome, Success):
        delivery = outcome.delivery
        return Envelope(
            status="ok",
            data=ContactUpdateResponse(
                outcome="updated",
                message=outcome.message,
                completed_steps=["update_attribute", "request_attribute_verification"],
                delivery=DeliveryResponse(
                    destination=delivery.destination,
                    medium=delivery.medium,
                    attribute=delivery.attribute,
                )
                if delivery
                else None,
            ),
        )
    if isinstance(outcome, PartialSuccess):
        return Envelope(
            status="ok",
            data=ContactUpdateResponse(
                outcome="partially_updated",
                message=outcome.message,
                completed_steps=list(outcome.completed_steps),
                failed_step=outcome.failed_step,
                reason=outcome.reason.value,
            ),
        )
    raise _outcome_error(outcome)


@router.get("/api/me", response_model=Envelope, tags=["account"])
async def me(token: Token = Depends(get_session_token)):
    runtime = get_runtime()
    expires_at = (
        datetime.fromtimestamp(token.expires_at, tz=timezone.utc).isoformat()
        if token.expires_at is not None
        else None
    )
    return Envelope(
        status="ok",
        data=MeResponse(
            subject=token.subject or "",
            expires_at=expires_at,
            remaining_seconds=runtime.codec.remaining_seconds(token),
            claims={key: token.claims[key] for key in ALLOWED_CLAIMS if key in token.claims},
        ),
    )


@router.get("/home", response_model=Envelope, tags=["pages"])
async def home(token: Token = Depends(get_session_token)):
    return Envelope(status="ok", data={"page": "home", "subject": token.subject})


@router.get("/api/debug/session", response_model=Envelope, tags=["debug"])
def debug_session(request: Request, authorization: Optional[str] = Header(None)):
    """Report what the route guard would see on this request.

    Tokens are only ever shown as masked previews.
    """
    _require_diagnostics()
    runtime = get_runtime()
    report = request_report(
        runtime.guard,
        cookie=request.cookies.get(runtime.settings.session_cookie_name),
        bearer=bearer_token(authorization),
    )
    return Envelope(status="ok", data=report)


@router.get("/api/debug/config", response_model=Envelope, tags=["debug"])
async def debug_config():
    _require_diagnostics()
    return Envelope(status="ok", data=config_report(get_runtime().settings))
