from __future__ import annotations

import json
import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from pantrypal.logging import get_logger

logger = get_logger(__name__)

# Browsers reject cookies whose name=value exceeds 4096 bytes
COOKIE_BYTE_LIMIT = 4096
# Upper bound on the HTTP-visible token copy regardless of the token's own exp
COOKIE_MAX_AGE_CAP = 7 * 24 * 60 * 60

_CLIENT_ID_FORMAT = re.compile(r"^[\w+]+$")


class IdentityBackend(str, Enum):
    """Where identity exchanges are executed."""

    MEMORY = "memory"
    COGNITO = "cognito"


class TokenVerification(str, Enum):
    """How the route guard treats token signatures.

    - AUTO: HS256 with the local signing secret for the memory backend,
      JWKS for Cognito when the pool is configured, otherwise NONE
    - NONE: structural and expiry checks only (trusted issuer and channel)
    - HS256: shared-secret verification
    - JWKS: RS256 verification against the provider's published keys
    """

    AUTO = "auto"
    NONE = "none"
    HS256 = "hs256"
    JWKS = "jwks"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service and its clients."""

    # Identity provider
    identity_backend: IdentityBackend = env_field(
        IdentityBackend.MEMORY, "IDENTITY_BACKEND"
    )
    cognito_region: str | None = env_field(None, "AWS_REGION")
    cognito_user_pool_id: str | None = env_field(None, "COGNITO_USER_POOL_ID")
    cognito_client_id: str | None = env_field(None, "COGNITO_CLIENT_ID")
    cognito_client_secret: str | None = env_field(None, "COGNITO_CLIENT_SECRET")
    cognito_endpoint_url: str | None = env_field(
        None,
        "COGNITO_ENDPOINT_URL",
        description="Override for the Cognito endpoint (local emulators)",
    )
    identity_timeout_seconds: float = env_field(10.0, "IDENTITY_TIMEOUT_SECONDS")

    # Memory provider
    token_signing_secret: str = env_field(
        "dev-only-signing-secret-change-me-0123456789", "TOKEN_SIGNING_SECRET"
    )
    token_issuer: str = env_field("pantrypal-local", "TOKEN_ISSUER")
    token_ttl_seconds: int = env_field(3600, "TOKEN_TTL_SECONDS")
    reset_code_ttl_seconds: int = env_field(
        3600, "RESET_CODE_TTL_SECONDS", description="Delivery window for reset codes"
    )
    reset_rate_limit_per_window: int = env_field(5, "RESET_RATE_LIMIT_PER_WINDOW")
    reset_rate_limit_window_seconds: int = env_field(
        900, "RESET_RATE_LIMIT_WINDOW_SECONDS"
    )
    challenge_ttl_seconds: int = env_field(180, "CHALLENGE_TTL_SECONDS")

    # Session storage
    session_cookie_name: str = env_field("session-token", "SESSION_COOKIE_NAME")
    durable_store_key: str = env_field("session-token", "DURABLE_STORE_KEY")
    durable_store_path: str = env_field(
        os.path.join(os.path.expanduser("~"), ".pantrypal", "session.json"),
        "DURABLE_STORE_PATH",
    )
    cookie_max_age_cap_seconds: int = env_field(
        COOKIE_MAX_AGE_CAP, "COOKIE_MAX_AGE_CAP_SECONDS"
    )
    cookie_byte_limit: int = env_field(COOKIE_BYTE_LIMIT, "COOKIE_BYTE_LIMIT")
    cookie_secure: bool = env_field(False, "COOKIE_SECURE")
    expiry_check_margin_seconds: int = env_field(10, "EXPIRY_CHECK_MARGIN_SECONDS")

    # Route gating
    entry_path: str = env_field("/", "ENTRY_PATH")
    public_paths: list[str] = env_field(
        [
            "/",
            "/login",
            "/change-password",
            "/reset-password",
            "/api/auth",
            "/api/debug",
            "/healthz",
        ],
        "PUBLIC_PATHS",
    )
    static_prefixes: list[str] = env_field(
        ["/static", "/assets", "/images", "/favicon.ico", "/manifest.json"],
        "STATIC_PREFIXES",
    )
    token_verification: TokenVerification = env_field(
        TokenVerification.AUTO, "TOKEN_VERIFICATION"
    )
    jwks_url: str | None = env_field(None, "JWKS_URL")

    # HTTP surface
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    diagnostics_enabled: bool = env_field(
        True,
        "DIAGNOSTICS_ENABLED",
        description="Expose /api/debug endpoints; disable in production",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("public_paths", "static_prefixes", "cors_allow_origins", mode="before")
    @classmethod
    def _split_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped.startswith("["):
                return json.loads(stripped)
            return [item.strip() for item in stripped.split(",") if item.strip()]
        return value

    @field_validator("entry_path")
    @classmethod
    def _validate_entry_path(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("ENTRY_PATH must be an absolute path")
        return value

    @field_validator("cookie_max_age_cap_seconds")
    @classmethod
    def _clamp_cookie_cap(cls, value: int) -> int:
        # The cap can be lowered but never raised past seven days
        if value <= 0:
            raise ValueError("COOKIE_MAX_AGE_CAP_SECONDS must be positive")
        return min(value, COOKIE_MAX_AGE_CAP)

    @property
    def cognito_endpoint(self) -> str | None:
        if self.cognito_endpoint_url:
            return self.cognito_endpoint_url.rstrip("/")
        if self.cognito_region:
            return f"https://cognito-idp.{self.cognito_region}.amazonaws.com"
        return None

    @property
    def resolved_jwks_url(self) -> str | None:
        if self.jwks_url:
            return self.jwks_url
        if self.cognito_region and self.cognito_user_pool_id:
            return (
                f"https://cognito-idp.{self.cognito_region}.amazonaws.com/"
                f"{self.cognito_user_pool_id}/.well-known/jwks.json"
            )
        return None

    def identity_problems(self) -> list[str]:
        """List configuration problems that make every identity exchange fail.

        Only meaningful for the Cognito backend; the memory backend needs no
        external configuration.
        """
        if self.identity_backend != IdentityBackend.COGNITO:
            return []
        problems: list[str] = []
        required = {
            "AWS_REGION": self.cognito_region,
            "COGNITO_CLIENT_ID": self.cognito_client_id,
        }
        if not self.cognito_endpoint_url:
            required["COGNITO_USER_POOL_ID"] = self.cognito_user_pool_id
        for env_name, value in required.items():
            if not value:
                problems.append(f"{env_name} is not set")
            elif value.startswith("your-"):
                problems.append(f"{env_name} still holds a placeholder value")
        client_id = self.cognito_client_id
        if client_id and not client_id.startswith("your-") and not _CLIENT_ID_FORMAT.match(client_id):
            problems.append("COGNITO_CLIENT_ID has an invalid format")
        if self.cognito_client_secret and self.cognito_client_secret.startswith("your-"):
            problems.append("COGNITO_CLIENT_SECRET still holds a placeholder value")
        return problems


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
