"""Tests for the Cognito JSON 1.1 client, run against httpx.MockTransport."""

import json

import httpx
import pytest

from pantrypal.config import IdentityBackend, Settings
from pantrypal.service.cognito import CognitoIdentityProvider, secret_hash
from pantrypal.service.errors import ConfigurationError
from pantrypal.service.identity import RESET_SENT_MESSAGE, IdentityBroker, ServiceUnavailable, Success
from pantrypal.service.provider import AuthResult, ChallengeResult, ProviderError, ProviderReason


def cognito_settings(**overrides):
    values = {
        "identity_backend": IdentityBackend.COGNITO,
        "cognito_region": "eu-west-1",
        "cognito_user_pool_id": "eu-west-1_abc123",
        "cognito_client_id": "client123",
    }
    values.update(overrides)
    return Settings(**values)


class Recorder:
    """MockTransport handler that replays one response per request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def bodies(self):
        return [json.loads(request.content) for request in self.requests]


def ok(payload):
    return httpx.Response(200, json=payload)


def error(error_type, message="", status=400):
    return httpx.Response(
        status,
        json={"__type": f"com.amazonaws.cognito.identity.idp.model#{error_type}", "message": message},
    )


def make_provider(recorder, **overrides):
    return CognitoIdentityProvider(cognito_settings(**overrides), transport=httpx.MockTransport(recorder))


class TestWireFormat:
    """Request shape of each operation."""

    @pytest.mark.asyncio
    async def test_initiate_auth_request(self):
        recorder = Recorder(ok({"AuthenticationResult": {"AccessToken": "a.b.c", "ExpiresIn": 900}}))
        provider = make_provider(recorder)

        result = await provider.initiate_auth("alice", "Secret1pass")
        await provider.aclose()

        assert result == AuthResult(token="a.b.c", ttl_seconds=900)
        request = recorder.requests[0]
        assert request.url == "https://cognito-idp.eu-west-1.amazonaws.com/"
        assert request.headers["X-Amz-Target"] == "AWSCognitoIdentityProviderService.InitiateAuth"
        assert request.headers["Content-Type"] == "application/x-amz-json-1.1"
        assert recorder.bodies[0] == {
            "AuthFlow": "USER_PASSWORD_AUTH",
            "ClientId": "client123",
            "AuthParameters": {"USERNAME": "alice", "PASSWORD": "Secret1pass"},
        }

    @pytest.mark.asyncio
    async def test_secret_hash_added_when_client_secret_set(self):
        recorder = Recorder(ok({"AuthenticationResult": {"AccessToken": "a.b.c", "ExpiresIn": 900}}))
        provider = make_provider(recorder, cognito_client_secret="s3cr3t")

        await provider.initiate_auth("alice", "Secret1pass")
        await provider.aclose()

        params = recorder.bodies[0]["AuthParameters"]
        assert params["SECRET_HASH"] == secret_hash("alice", "client123", "s3cr3t")

    def test_secret_hash_shape(self):
        value = secret_hash("alice", "client123", "s3cr3t")
        assert len(value) == 44 and value.endswith("=")
        assert value != secret_hash("bob", "client123", "s3cr3t")

    @pytest.mark.asyncio
    async def test_new_password_challenge(self):
        recorder = Recorder(
            ok({"ChallengeName": "NEW_PASSWORD_REQUIRED", "Session": "sess-1", "ChallengeParameters": {}})
        )
        provider = make_provider(recorder)

        result = await provider.initiate_auth("alice", "Secret1pass")
        await provider.aclose()

        assert isinstance(result, ChallengeResult)
        assert result.name == "NEW_PASSWORD_REQUIRED"
        assert result.handle == "sess-1"

    @pytest.mark.asyncio
    async def test_challenge_response_body(self):
        recorder = Recorder(ok({"AuthenticationResult": {"AccessToken": "a.b.c", "ExpiresIn": 3600}}))
        provider = make_provider(recorder)

        await provider.respond_to_challenge(
            "alice",
            "sess-1",
            {"new_password": "Rotated2pass", "email": "a@example.com", "email_verified": "true"},
        )
        await provider.aclose()

        assert recorder.requests[0].headers["X-Amz-Target"].endswith(".RespondToAuthChallenge")
        assert recorder.bodies[0] == {
            "ChallengeName": "NEW_PASSWORD_REQUIRED",
            "ClientId": "client123",
            "Session": "sess-1",
            "ChallengeResponses": {
                "USERNAME": "alice",
                "NEW_PASSWORD": "Rotated2pass",
                "userAttributes.email": "a@example.com",
                "userAttributes.email_verified": "true",
            },
        }

    @pytest.mark.asyncio
    async def test_follow_up_challenge_yields_no_token(self):
        recorder = Recorder(ok({"ChallengeName": "MFA_SETUP", "Session": "sess-2"}))
        provider = make_provider(recorder)

        result = await provider.respond_to_challenge("alice", "sess-1", {"new_password": "Rotated2pass"})
        await provider.aclose()

        assert result is None

    @pytest.mark.asyncio
    async def test_forgot_password_uses_secret_hash_key(self):
        recorder = Recorder(
            ok(
                {
                    "CodeDeliveryDetails": {
                        "Destination": "a***@e***",
                        "DeliveryMedium": "EMAIL",
                        "AttributeName": "email",
                    }
                }
            )
        )
        provider = make_provider(recorder, cognito_client_secret="s3cr3t")

        delivery = await provider.request_password_reset("alice")
        await provider.aclose()

        assert delivery.medium == "EMAIL"
        body = recorder.bodies[0]
        assert body["Username"] == "alice"
        assert body["SecretHash"] == secret_hash("alice", "client123", "s3cr3t")

    @pytest.mark.asyncio
    async def test_update_attribute_body(self):
        recorder = Recorder(ok({}))
        provider = make_provider(recorder)

        await provider.update_attribute("tok.en.x", "email", "new@example.com")
        await provider.aclose()

        assert recorder.bodies[0] == {
            "AccessToken": "tok.en.x",
            "UserAttributes": [{"Name": "email", "Value": "new@example.com"}],
        }


class TestErrorMapping:
    """Provider error types map onto the closed reason set."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error_type,reason",
        [
            ("UserNotFoundException", ProviderReason.NOT_FOUND),
            ("NotAuthorizedException", ProviderReason.NOT_AUTHORIZED),
            ("InvalidParameterException", ProviderReason.INVALID_PARAMETER),
            ("CodeMismatchException", ProviderReason.CODE_MISMATCH),
            ("ExpiredCodeException", ProviderReason.CODE_EXPIRED),
            ("LimitExceededException", ProviderReason.RATE_LIMITED),
            ("TooManyRequestsException", ProviderReason.RATE_LIMITED),
            ("InvalidPasswordException", ProviderReason.POLICY_VIOLATION),
            ("SomethingNewException", ProviderReason.SERVICE_UNAVAILABLE),
        ],
    )
    async def test_reason_mapping(self, error_type, reason):
        provider = make_provider(Recorder(error(error_type, "upstream says no")))

        with pytest.raises(ProviderError) as exc_info:
            await provider.confirm_password_reset("alice", "123456", "Rotated2pass")
        await provider.aclose()

        assert exc_info.value.reason == reason
        assert exc_info.value.upstream == error_type

    @pytest.mark.asyncio
    async def test_attribute_rejection_is_flagged(self):
        provider = make_provider(
            Recorder(error("InvalidParameterException", "Invalid attributes given, email_verified is missing"))
        )

        with pytest.raises(ProviderError) as exc_info:
            await provider.respond_to_challenge("alice", "sess-1", {"new_password": "Rotated2pass"})
        await provider.aclose()

        assert exc_info.value.unsupported_attributes

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error_type", ["ResourceNotFoundException", "UnrecognizedClientException"])
    async def test_configuration_errors(self, error_type):
        provider = make_provider(Recorder(error(error_type, "User pool client does not exist.")))

        with pytest.raises(ConfigurationError) as exc_info:
            await provider.initiate_auth("alice", "Secret1pass")
        await provider.aclose()

        assert error_type in exc_info.value.problems[0]

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self):
        recorder = Recorder(httpx.ConnectTimeout("timed out"))
        provider = make_provider(recorder)

        with pytest.raises(ProviderError) as exc_info:
            await provider.request_password_reset("alice")
        await provider.aclose()

        assert exc_info.value.reason == ProviderReason.SERVICE_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        provider = make_provider(Recorder(httpx.Response(502, text="<html>bad gateway</html>")))

        with pytest.raises(ProviderError) as exc_info:
            await provider.request_password_reset("alice")
        await provider.aclose()

        assert exc_info.value.reason == ProviderReason.SERVICE_UNAVAILABLE


class TestConfiguration:
    """Unusable settings fail before any request is sent."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,problem",
        [
            ({"cognito_client_id": "your-client-id"}, "COGNITO_CLIENT_ID still holds a placeholder value"),
            ({"cognito_region": None}, "AWS_REGION is not set"),
            ({"cognito_user_pool_id": None}, "COGNITO_USER_POOL_ID is not set"),
            ({"cognito_client_id": "bad id!"}, "COGNITO_CLIENT_ID has an invalid format"),
        ],
    )
    async def test_problems_raise_configuration_error(self, overrides, problem):
        recorder = Recorder()
        provider = make_provider(recorder, **overrides)

        with pytest.raises(ConfigurationError) as exc_info:
            await provider.initiate_auth("alice", "Secret1pass")
        await provider.aclose()

        assert problem in exc_info.value.problems
        assert recorder.requests == []


class TestThroughBroker:
    """Cognito failures as the broker reports them."""

    @pytest.mark.asyncio
    async def test_unknown_user_reset_looks_sent(self):
        provider = make_provider(Recorder(error("UserNotFoundException", "Username/client id combination not found.")))

        outcome = await IdentityBroker(provider).request_reset("nobody")
        await provider.aclose()

        assert outcome == Success(message=RESET_SENT_MESSAGE)

    @pytest.mark.asyncio
    async def test_misconfiguration_is_reported_as_configuration(self):
        provider = make_provider(Recorder(), cognito_client_id="your-client-id")

        outcome = await IdentityBroker(provider).login("alice", "Secret1pass")
        await provider.aclose()

        assert isinstance(outcome, ServiceUnavailable)
        assert outcome.kind == "configuration"

    @pytest.mark.asyncio
    async def test_attribute_rejection_retried_minimal(self):
        recorder = Recorder(
            error("InvalidParameterException", "Invalid attributes given, email_verified is missing"),
            ok({"AuthenticationResult": {"AccessToken": "a.b.c", "ExpiresIn": 3600}}),
        )
        provider = make_provider(recorder)

        outcome = await IdentityBroker(provider).complete_rotation(
            "alice", "Rotated2pass", "sess-1", email="a@example.com"
        )
        await provider.aclose()

        assert isinstance(outcome, Success)
        assert outcome.token == "a.b.c"
        assert "userAttributes.email" not in recorder.bodies[1]["ChallengeResponses"]
