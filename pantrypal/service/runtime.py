from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union

from pantrypal.config import IdentityBackend, Settings, get_settings, reset_settings_cache
from pantrypal.logging import get_logger
from pantrypal.service.cognito import CognitoIdentityProvider
from pantrypal.service.guard import RouteGuard
from pantrypal.service.identity import IdentityBroker
from pantrypal.service.provider import MemoryIdentityProvider
from pantrypal.service.tokens import TokenCodec, build_verifier

logger = get_logger(__name__)


def build_provider(settings: Settings) -> Union[MemoryIdentityProvider, CognitoIdentityProvider]:
    if settings.identity_backend == IdentityBackend.COGNITO:
        problems = settings.identity_problems()
        if problems:
            # Exchanges will answer with a configuration outcome until fixed
            logger.error("identity_configuration_invalid", problems=problems)
        return CognitoIdentityProvider(settings)
    return MemoryIdentityProvider(settings)


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            identity_backend=self.settings.identity_backend.value,
            test_mode=self.settings.test_mode,
        )
        self.codec = TokenCodec()
        self.provider = build_provider(self.settings)
        self.broker = IdentityBroker(self.provider)
        self.verifier = build_verifier(self.settings)
        self.guard = RouteGuard.from_settings(self.settings, self.codec, self.verifier)

        logger.info(
            "runtime_initialized",
            identity_backend=self.settings.identity_backend.value,
            signature_verification=type(self.verifier).__name__ if self.verifier else "none",
            diagnostics_enabled=self.settings.diagnostics_enabled,
        )

    async def aclose(self) -> None:
        await self.provider.aclose()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_previous(previous: Runtime) -> None:
    try:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(previous.aclose())
        else:
            loop.create_task(previous.aclose())
    except Exception as exc:
        # Connections may belong to a loop that is already gone
        logger.warning("runtime_close_failed", error_type=type(exc).__name__, error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_previous(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "build_provider"]
