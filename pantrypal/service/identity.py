from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union

from pantrypal.logging import get_logger, sanitize_error_message
from pantrypal.service.errors import ConfigurationError
from pantrypal.service.provider import (
    NEW_PASSWORD_REQUIRED,
    AuthResult,
    ChallengeResult,
    DeliveryDetails,
    IdentityProvider,
    ProviderError,
    ProviderReason,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
CONTACT_ATTRIBUTES = frozenset({"email", "phone_number"})
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

RESET_SENT_MESSAGE = (
    "If an account exists for that username or email, a verification code has been sent. "
    "Check your email for the code."
)


class ChallengeKind(str, Enum):
    NEW_PASSWORD = "NEW_PASSWORD"


@dataclass(frozen=True)
class Success:
    token: Optional[str] = None
    ttl_seconds: Optional[int] = None
    message: str = "Done."
    delivery: Optional[DeliveryDetails] = None


@dataclass(frozen=True)
class ChallengeRequired:
    kind: ChallengeKind
    handle: str = field(repr=False)
    message: str = "Please set a new password to continue."


@dataclass(frozen=True)
class Rejected:
    reason: ProviderReason
    message: str


@dataclass(frozen=True)
class ServiceUnavailable:
    detail: str
    kind: str = "transient"
    message: str = "The sign-in service is temporarily unavailable. Please try again shortly."


@dataclass(frozen=True)
class PartialSuccess:
    """A multi-step exchange that stopped after at least one applied step."""

    completed_steps: tuple[str, ...]
    failed_step: str
    reason: ProviderReason
    message: str


Outcome = Union[Success, ChallengeRequired, Rejected, ServiceUnavailable, PartialSuccess]

_CONFIGURATION_MESSAGE = "The sign-in service is not configured correctly. Please contact the administrator."

_MESSAGES: dict[ProviderReason, str] = {
    ProviderReason.NOT_FOUND: "No matching account was found.",
    ProviderReason.NOT_AUTHORIZED: "Incorrect username or password.",
    ProviderReason.INVALID_PARAMETER: "The request was not accepted. Check the values and try again.",
    ProviderReason.CODE_MISMATCH: "The verification code is incorrect. Check the code and try again.",
    ProviderReason.CODE_EXPIRED: "The verification code has expired. Request a new code to continue.",
    ProviderReason.RATE_LIMITED: "Too many attempts. Please wait a few minutes and try again.",
    ProviderReason.POLICY_VIOLATION: (
        "The new password does not meet the password requirements. Choose a different password."
    ),
}

_ROTATION_MESSAGES: dict[ProviderReason, str] = {
    ProviderReason.NOT_AUTHORIZED: "Your password change session has expired. Please sign in again.",
}


def check_new_password(new_password: Optional[str], confirmation: Optional[str] = None) -> Optional[str]:
    """Return a user-facing problem with a new password, or None."""
    if not new_password:
        return "Enter a new password."
    if confirmation is not None and new_password != confirmation:
        return "Passwords do not match."
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long."
    return None


def _invalid(message: str) -> Rejected:
    return Rejected(ProviderReason.INVALID_PARAMETER, message)


class IdentityBroker:
    """Runs identity provider exchanges and normalizes their outcomes.

    Every public method returns exactly one ``Outcome``; provider errors,
    configuration problems and unexpected failures are all folded into the
    outcome vocabulary instead of propagating to the caller.
    """

    def __init__(self, provider: IdentityProvider) -> None:
        self.provider = provider

    def _from_provider_error(
        self,
        operation: str,
        exc: ProviderError,
        messages: Optional[dict[ProviderReason, str]] = None,
    ) -> Union[Rejected, ServiceUnavailable]:
        logger.info(
            "identity_exchange_rejected",
            operation=operation,
            reason=exc.reason.value,
            upstream=exc.upstream,
        )
        if exc.reason == ProviderReason.SERVICE_UNAVAILABLE:
            return ServiceUnavailable(detail=sanitize_error_message(exc.message))
        message = (messages or {}).get(exc.reason) or _MESSAGES.get(exc.reason) or exc.message
        if exc.reason == ProviderReason.POLICY_VIOLATION and exc.message:
            # Provider policy text tells the user what to change
            message = f"{message} ({sanitize_error_message(exc.message)})"
        return Rejected(exc.reason, message)

    def _from_failure(self, operation: str, exc: Exception) -> ServiceUnavailable:
        if isinstance(exc, ConfigurationError):
            logger.error(
                "identity_configuration_error",
                operation=operation,
                problems=exc.problems,
            )
            return ServiceUnavailable(
                detail="; ".join(exc.problems),
                kind="configuration",
                message=_CONFIGURATION_MESSAGE,
            )
        logger.error(
            "identity_exchange_failed",
            operation=operation,
            error_type=type(exc).__name__,
            error=sanitize_error_message(str(exc)),
        )
        return ServiceUnavailable(detail=type(exc).__name__)

    async def login(self, username: str, password: str) -> Outcome:
        username = (username or "").strip()
        if not username or not password:
            return _invalid("Enter both username and password.")
        try:
            result = await self.provider.initiate_auth(username, password)
        except ProviderError as exc:
            if exc.reason == ProviderReason.NOT_FOUND:
                # Unknown users read like a wrong password
                exc = ProviderError(ProviderReason.NOT_AUTHORIZED, exc.message, upstream=exc.upstream)
            return self._from_provider_error("login", exc)
        except Exception as exc:
            return self._from_failure("login", exc)

        if isinstance(result, ChallengeResult):
            if result.name == NEW_PASSWORD_REQUIRED and result.handle:
                logger.info("identity_challenge_required", challenge=result.name)
                return ChallengeRequired(ChallengeKind.NEW_PASSWORD, result.handle)
            logger.warning("identity_unsupported_challenge", challenge=result.name)
            return ServiceUnavailable(
                detail=f"unsupported challenge {result.name}",
                message="This account requires a sign-in step that is not supported here.",
            )
        if not isinstance(result, AuthResult) or not result.token or result.ttl_seconds <= 0:
            logger.error("identity_missing_token", operation="login")
            return ServiceUnavailable(detail="authentication result without a token")
        logger.info("identity_login_succeeded", ttl_seconds=result.ttl_seconds)
        return Success(result.token, result.ttl_seconds, message="Signed in.")

    async def _respond(
        self, username: str, handle: str, attributes: dict[str, str]
    ) -> Union[Optional[AuthResult], ProviderError, Exception]:
        try:
            return await self.provider.respond_to_challenge(username, handle, attributes)
        except Exception as exc:
            return exc

    async def complete_rotation(
        self,
        username: str,
        new_password: str,
        handle: str,
        email: Optional[str] = None,
    ) -> Outcome:
        """Answer a NEW_PASSWORD challenge.

        With an email the richer payload (email plus its verified flag) goes
        first. If the provider refuses those attributes, one more attempt is
        made with only the username and new password; any other rejection is
        final.
        """
        username = (username or "").strip()
        if not username or not handle:
            return _invalid("Your password change session is missing. Please sign in again.")
        problem = check_new_password(new_password)
        if problem:
            return _invalid(problem)
        email = (email or "").strip() or None
        if email and not _EMAIL_PATTERN.match(email):
            return _invalid("Enter a valid email address.")

        minimal = {"new_password": new_password}
        result = None
        if email:
            rich = {**minimal, "email": email, "email_verified": "true"}
            result = await self._respond(username, handle, rich)
            if isinstance(result, ProviderError) and result.unsupported_attributes:
                logger.info("identity_rotation_minimal_retry", upstream=result.upstream)
                result = await self._respond(username, handle, minimal)
        else:
            result = await self._respond(username, handle, minimal)

        if isinstance(result, ProviderError):
            return self._from_provider_error("complete_rotation", result, _ROTATION_MESSAGES)
        if isinstance(result, Exception):
            return self._from_failure("complete_rotation", result)
        if result is None:
            logger.info("identity_rotation_succeeded", token_returned=False)
            return Success(message="Password changed. Please sign in with your new password.")
        logger.info("identity_rotation_succeeded", token_returned=True)
        return Success(result.token, result.ttl_seconds, message="Password changed successfully.")

    async def request_reset(self, identifier: str) -> Outcome:
        identifier = (identifier or "").strip()
        if not identifier:
            return _invalid("Enter your username or email.")
        try:
            await self.provider.request_password_reset(identifier)
        except ProviderError as exc:
            if exc.reason == ProviderReason.NOT_FOUND:
                logger.info("identity_reset_unknown_identifier")
                return Success(message=RESET_SENT_MESSAGE)
            return self._from_provider_error("request_reset", exc)
        except Exception as exc:
            return self._from_failure("request_reset", exc)
        logger.info("identity_reset_requested")
        # Delivery details are withheld: the destination reveals the account
        return Success(message=RESET_SENT_MESSAGE)

    async def confirm_reset(self, identifier: str, code: str, new_password: str) -> Outcome:
        identifier = (identifier or "").strip()
        code = (code or "").strip()
        if not identifier or not code:
            return _invalid("Enter your username and the verification code.")
        problem = check_new_password(new_password)
        if problem:
            return _invalid(problem)
        try:
            await self.provider.confirm_password_reset(identifier, code, new_password)
        except ProviderError as exc:
            if exc.reason == ProviderReason.NOT_FOUND:
                # Same answer as a wrong code, to avoid confirming the account
                exc = ProviderError(ProviderReason.CODE_MISMATCH, exc.message, upstream=exc.upstream)
            return self._from_provider_error("confirm_reset", exc)
        except Exception as exc:
            return self._from_failure("confirm_reset", exc)
        logger.info("identity_reset_confirmed")
        return Success(message="Password reset. You can now sign in with your new password.")

    async def update_contact_attribute(self, token: str, attribute: str, value: str) -> Outcome:
        """Change a contact attribute, then ask the provider to verify it.

        The update is not rolled back when the verification request fails;
        the caller gets a ``PartialSuccess`` naming the step that failed.
        """
        value = (value or "").strip()
        if not token:
            return Rejected(ProviderReason.NOT_AUTHORIZED, "Sign in to update your account.")
        if attribute not in CONTACT_ATTRIBUTES:
            return _invalid(f"{attribute} cannot be changed here.")
        if not value or (attribute == "email" and not _EMAIL_PATTERN.match(value)):
            return _invalid(f"Enter a valid {attribute.replace('_', ' ')}.")

        try:
            await self.provider.update_attribute(token, attribute, value)
        except ProviderError as exc:
            return self._from_provider_error("update_attribute", exc, {
                ProviderReason.NOT_AUTHORIZED: "Your session has expired. Please sign in again.",
            })
        except Exception as exc:
            return self._from_failure("update_attribute", exc)

        try:
            delivery = await self.provider.request_attribute_verification(token, attribute)
        except ProviderError as exc:
            reason = exc.reason
        except Exception as exc:
            self._from_failure("request_attribute_verification", exc)
            reason = ProviderReason.SERVICE_UNAVAILABLE
        else:
            logger.info("identity_attribute_updated", attribute=attribute, verification_sent=True)
            return Success(
                message=f"Your {attribute.replace('_', ' ')} was updated. Check it for a verification code.",
                delivery=delivery,
            )

        logger.warning(
            "identity_attribute_verification_failed",
            attribute=attribute,
            reason=reason.value,
        )
        return PartialSuccess(
            completed_steps=("update_attribute",),
            failed_step="request_attribute_verification",
            reason=reason,
            message=(
                f"Your {attribute.replace('_', ' ')} was updated, but the verification code "
                "could not be sent. Request a new code later."
            ),
        )


__all__ = [
    "ChallengeKind",
    "Success",
    "ChallengeRequired",
    "Rejected",
    "ServiceUnavailable",
    "PartialSuccess",
    "Outcome",
    "IdentityBroker",
    "check_new_password",
    "RESET_SENT_MESSAGE",
    "MIN_PASSWORD_LENGTH",
]
