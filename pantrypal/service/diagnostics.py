"""Read-only troubleshooting reports for the session subsystem.

Nothing here returns a raw token or secret: tokens appear as masked previews
with an allow-listed subset of their header and claims.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pantrypal.config import Settings
from pantrypal.logging import mask_secret
from pantrypal.service.guard import RouteGuard
from pantrypal.service.tokens import Token, TokenCodec
from pantrypal.storage.dual import StoreSnapshot

ALLOWED_CLAIMS = ("sub", "iss", "exp", "iat", "auth_time", "token_use", "client_id", "scope")
ALLOWED_HEADER = ("alg", "kid", "typ")


def _iso(epoch: Optional[float]) -> Optional[str]:
    if epoch is None:
        return None
    try:
        return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()
    except (OverflowError, OSError, ValueError):
        return None


def describe_token(raw: Optional[str], codec: TokenCodec, now: Optional[float] = None) -> dict[str, Any]:
    if not raw:
        return {"status": "missing"}
    info: dict[str, Any] = {"preview": mask_secret(raw), "length": len(raw)}
    token = codec.decode(raw)
    if not isinstance(token, Token):
        info["status"] = "malformed"
        return info

    current = codec.now() if now is None else now
    if token.expires_at is None:
        info["status"] = "no_expiry"
    else:
        info["status"] = "live" if codec.is_live(token, current) else "expired"
    info["header"] = {key: token.header[key] for key in ALLOWED_HEADER if key in token.header}
    info["claims"] = {key: token.claims[key] for key in ALLOWED_CLAIMS if key in token.claims}
    info["expires_at"] = _iso(token.expires_at)
    info["remaining_seconds"] = codec.remaining_seconds(token, current)
    return info


def request_report(
    guard: RouteGuard,
    *,
    cookie: Optional[str],
    bearer: Optional[str],
) -> dict[str, Any]:
    """Describe what the route guard sees on an incoming request."""
    codec = guard.codec
    effective = cookie or bearer
    reason, _ = guard.check(effective)
    return {
        "cookie": {"present": bool(cookie), **describe_token(cookie, codec)},
        "bearer": {"present": bool(bearer), **describe_token(bearer, codec)},
        "consistent": (cookie == bearer) if cookie and bearer else None,
        "effective_source": "cookie" if cookie else ("bearer" if bearer else None),
        "guard": {"admitted": reason == "admitted", "reason": reason},
    }


def store_report(snapshot: StoreSnapshot, codec: TokenCodec) -> dict[str, Any]:
    """Compare the client's durable copy with its cookie copy."""
    both = snapshot.durable is not None and snapshot.http is not None
    return {
        "durable": {"present": snapshot.durable is not None, **describe_token(snapshot.durable, codec)},
        "http": {"present": snapshot.http is not None, **describe_token(snapshot.http, codec)},
        "consistent": snapshot.durable == snapshot.http,
        "both_present": both,
    }


def _mask_setting(value: Optional[str]) -> str:
    if not value:
        return "not set"
    if value.startswith("your-"):
        return "placeholder"
    return mask_secret(value, head=4, tail=4)


def config_report(settings: Settings) -> dict[str, Any]:
    """Masked identity configuration check for operators."""
    problems = settings.identity_problems()
    return {
        "identity_backend": settings.identity_backend.value,
        "region": settings.cognito_region or "not set",
        "user_pool_id": _mask_setting(settings.cognito_user_pool_id),
        "client_id": _mask_setting(settings.cognito_client_id),
        "client_secret": "set" if settings.cognito_client_secret else "not set",
        "endpoint": settings.cognito_endpoint,
        "token_verification": settings.token_verification.value,
        "jwks_url": settings.resolved_jwks_url,
        "problems": problems,
        "ok": not problems,
    }


__all__ = ["describe_token", "request_report", "store_report", "config_report", "ALLOWED_CLAIMS"]
