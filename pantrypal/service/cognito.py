from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Any, Optional, Union

import httpx

from pantrypal.config import Settings
from pantrypal.logging import get_logger
from pantrypal.service.errors import ConfigurationError
from pantrypal.service.provider import (
    NEW_PASSWORD_REQUIRED,
    AuthResult,
    ChallengeResult,
    DeliveryDetails,
    ProviderError,
    ProviderReason,
)

logger = get_logger(__name__)

_TARGET_PREFIX = "AWSCognitoIdentityProviderService."
_CONTENT_TYPE = "application/x-amz-json-1.1"

_REASONS: dict[str, ProviderReason] = {
    "UserNotFoundException": ProviderReason.NOT_FOUND,
    "NotAuthorizedException": ProviderReason.NOT_AUTHORIZED,
    "UserNotConfirmedException": ProviderReason.NOT_AUTHORIZED,
    "PasswordResetRequiredException": ProviderReason.NOT_AUTHORIZED,
    "InvalidParameterException": ProviderReason.INVALID_PARAMETER,
    "CodeMismatchException": ProviderReason.CODE_MISMATCH,
    "ExpiredCodeException": ProviderReason.CODE_EXPIRED,
    "LimitExceededException": ProviderReason.RATE_LIMITED,
    "TooManyRequestsException": ProviderReason.RATE_LIMITED,
    "TooManyFailedAttemptsException": ProviderReason.RATE_LIMITED,
    "InvalidPasswordException": ProviderReason.POLICY_VIOLATION,
    "InternalErrorException": ProviderReason.SERVICE_UNAVAILABLE,
}

# Errors that mean the client settings themselves are wrong
_CONFIGURATION_ERRORS = frozenset(
    {
        "ResourceNotFoundException",
        "UnrecognizedClientException",
        "InvalidUserPoolConfigurationException",
        "InvalidLambdaResponseException",
    }
)


def secret_hash(username: str, client_id: str, client_secret: str) -> str:
    digest = hmac.new(
        client_secret.encode("utf-8"),
        (username + client_id).encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def _delivery(payload: dict[str, Any]) -> DeliveryDetails:
    details = payload.get("CodeDeliveryDetails") or {}
    return DeliveryDetails(
        destination=details.get("Destination"),
        medium=details.get("DeliveryMedium"),
        attribute=details.get("AttributeName"),
    )


class CognitoIdentityProvider:
    """Cognito user pool client speaking the JSON 1.1 wire protocol.

    Uses the ``USER_PASSWORD_AUTH`` flow; the access token of the
    authentication result is the session token.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self._client = httpx.AsyncClient(
            base_url=settings.cognito_endpoint or "https://cognito-idp.invalid",
            timeout=settings.identity_timeout_seconds,
            follow_redirects=False,
            transport=transport,
        )

    @property
    def client_id(self) -> str:
        return self.settings.cognito_client_id or ""

    def _with_secret(self, username: str, params: dict[str, Any], key: str) -> dict[str, Any]:
        if self.settings.cognito_client_secret:
            params[key] = secret_hash(username, self.client_id, self.settings.cognito_client_secret)
        return params

    async def _call(self, operation: str, body: dict[str, Any]) -> dict[str, Any]:
        problems = self.settings.identity_problems()
        if problems:
            raise ConfigurationError(problems)
        headers = {
            "X-Amz-Target": _TARGET_PREFIX + operation,
            "Content-Type": _CONTENT_TYPE,
        }
        try:
            response = await self._client.post("/", json=body, headers=headers)
        except httpx.TimeoutException as exc:
            logger.warning("cognito_timeout", operation=operation, error=str(exc))
            raise ProviderError(ProviderReason.SERVICE_UNAVAILABLE, "identity provider timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("cognito_transport_error", operation=operation, error=str(exc))
            raise ProviderError(ProviderReason.SERVICE_UNAVAILABLE, "identity provider unreachable") from exc

        try:
            payload = response.json() if response.content else {}
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        if response.is_success:
            return payload

        raw_type = str(payload.get("__type") or payload.get("code") or "")
        error_type = raw_type.rsplit("#", 1)[-1].split(":", 1)[0]
        message = str(payload.get("message") or payload.get("Message") or "")
        logger.info(
            "cognito_error",
            operation=operation,
            status_code=response.status_code,
            error_type=error_type or None,
        )
        if error_type in _CONFIGURATION_ERRORS:
            raise ConfigurationError([f"{error_type}: {message or 'rejected by identity provider'}"])
        reason = _REASONS.get(error_type, ProviderReason.SERVICE_UNAVAILABLE)
        raise ProviderError(reason, message or reason.value, upstream=error_type or None)

    async def initiate_auth(self, username: str, password: str) -> Union[AuthResult, ChallengeResult]:
        params = self._with_secret(username, {"USERNAME": username, "PASSWORD": password}, "SECRET_HASH")
        payload = await self._call(
            "InitiateAuth",
            {"AuthFlow": "USER_PASSWORD_AUTH", "ClientId": self.client_id, "AuthParameters": params},
        )
        result = self._auth_result(payload)
        if result is None:
            raise ProviderError(ProviderReason.SERVICE_UNAVAILABLE, "identity provider returned no result")
        return result

    async def respond_to_challenge(
        self, username: str, handle: str, attributes: dict[str, str]
    ) -> Optional[AuthResult]:
        responses: dict[str, Any] = {"USERNAME": username}
        for name, value in attributes.items():
            if name == "new_password":
                responses["NEW_PASSWORD"] = value
            else:
                responses[f"userAttributes.{name}"] = value
        self._with_secret(username, responses, "SECRET_HASH")
        payload = await self._call(
            "RespondToAuthChallenge",
            {
                "ChallengeName": NEW_PASSWORD_REQUIRED,
                "ClientId": self.client_id,
                "Session": handle,
                "ChallengeResponses": responses,
            },
        )
        result = self._auth_result(payload)
        if isinstance(result, ChallengeResult):
            # A follow-up challenge (MFA setup etc.) cannot be completed here
            logger.warning("cognito_unsupported_challenge", challenge=result.name)
            return None
        return result

    def _auth_result(self, payload: dict[str, Any]) -> Union[AuthResult, ChallengeResult, None]:
        auth = payload.get("AuthenticationResult")
        if isinstance(auth, dict) and auth.get("AccessToken"):
            return AuthResult(token=auth["AccessToken"], ttl_seconds=int(auth.get("ExpiresIn") or 3600))
        if payload.get("ChallengeName"):
            return ChallengeResult(
                name=payload["ChallengeName"],
                handle=payload.get("Session") or "",
                parameters=payload.get("ChallengeParameters") or {},
            )
        return None

    async def request_password_reset(self, identifier: str) -> DeliveryDetails:
        body = self._with_secret(identifier, {"ClientId": self.client_id, "Username": identifier}, "SecretHash")
        return _delivery(await self._call("ForgotPassword", body))

    async def confirm_password_reset(self, identifier: str, code: str, new_password: str) -> None:
        body = {
            "ClientId": self.client_id,
            "Username": identifier,
            "ConfirmationCode": code,
            "Password": new_password,
        }
        await self._call("ConfirmForgotPassword", self._with_secret(identifier, body, "SecretHash"))

    async def update_attribute(self, token: str, name: str, value: str) -> None:
        await self._call(
            "UpdateUserAttributes",
            {"AccessToken": token, "UserAttributes": [{"Name": name, "Value": value}]},
        )

    async def request_attribute_verification(self, token: str, name: str) -> DeliveryDetails:
        payload = await self._call(
            "GetUserAttributeVerificationCode", {"AccessToken": token, "AttributeName": name}
        )
        return _delivery(payload)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["CognitoIdentityProvider", "secret_hash"]
