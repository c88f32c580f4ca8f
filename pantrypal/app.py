from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from pantrypal.api.error_handling import register_exception_handlers
from pantrypal.api.routes import router
from pantrypal.config import Settings
from pantrypal.logging import get_logger, set_correlation_id
from pantrypal.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    runtime = get_runtime()
    problems = runtime.settings.identity_problems()
    logger.info(
        "startup_complete",
        identity_backend=runtime.settings.identity_backend.value,
        identity_configured=not problems,
    )

    yield

    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="PantryPal Session Service", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard because credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_route_guard(request: Request, call_next):
    """Gate protected paths on a live session token.

    Denied requests are redirected to the entry path with a ``returnUrl``;
    admitted ones continue with the token in the Authorization header no
    matter whether it arrived as a cookie or a bearer header.
    """
    guard = get_runtime().guard
    path = request.url.path
    cookies = request.cookies
    authorization = request.headers.get("Authorization")
    if guard.blocking:
        # Key lookups may hit the network
        decision = await asyncio.to_thread(
            guard.evaluate, path, cookies=cookies, authorization=authorization
        )
    else:
        decision = guard.evaluate(path, cookies=cookies, authorization=authorization)

    if not decision.admitted:
        response = RedirectResponse(decision.redirect_to or guard.entry_path, status_code=307)
        response.headers["Cache-Control"] = "no-store"
        return response

    canonical = decision.authorization
    if canonical:
        headers = [(k, v) for k, v in request.scope["headers"] if k.lower() != b"authorization"]
        headers.append((b"authorization", canonical.encode("latin-1")))
        request.scope["headers"] = headers
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Auth responses carry tokens and must never be cached
    if request.url.path.startswith("/api/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Attach a correlation id to the request context and the response.

    The id comes from the client's X-Request-ID header when present and is
    generated otherwise.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)
