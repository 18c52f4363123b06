"""Tests for temporary API tokens and the token-gated proxy"""
import json

import httpx
import pytest
import respx

from app.core import tokens
from app.core.tokens import TokenService


@pytest.fixture
def vendor():
    with respx.mock(assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def issued_token(app_client, signed_in):
    response = app_client.post("/callable/getTemporaryApiToken", json={}, headers=signed_in)
    return response.json()["result"]["token"]


class TestGetTemporaryApiToken:
    def test_issues_fifteen_minute_token(self, app_client, signed_in):
        response = app_client.post("/callable/getTemporaryApiToken", json={}, headers=signed_in)

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["success"] is True
        assert result["expiresIn"] == 900

        claims = tokens.token_service.verify(result["token"])
        assert claims["sub"] == "user-1"
        assert claims["exp"] - claims["iat"] == 900
        assert claims["permissions"] == {"deepseek": True, "openai": True, "mistral": True}
        assert claims["limits"] == {"requestsPerMinute": 10}


class TestApiProxy:
    def test_forwards_with_token(self, app_client, vendor, provider_keys, signed_in, issued_token):
        route = vendor.post("https://api.deepseek.com/v1/chat/completions").mock(
            return_value=httpx.Response(200, json={"id": "ds-1"})
        )
        body = {"model": "deepseek-chat", "messages": [{"role": "user", "content": "x"}]}

        response = app_client.post(
            "/callable/apiProxy",
            json={"token": issued_token, "endpoint": "chat/completions", "method": "POST", "body": body},
            headers=signed_in,
        )

        assert response.status_code == 200
        assert response.json()["result"] == {"id": "ds-1"}
        sent = route.calls.last.request
        assert json.loads(sent.content) == body
        assert sent.headers["Authorization"] == "Bearer sk-test-deepseek"

    def test_api_type_selects_provider(self, app_client, vendor, provider_keys, signed_in, issued_token):
        route = vendor.get("https://api.mistral.ai/v1/models").mock(
            return_value=httpx.Response(200, json={"data": []})
        )

        response = app_client.post(
            "/callable/apiProxy",
            json={"token": issued_token, "endpoint": "/models", "method": "get", "apiType": "mistral"},
            headers=signed_in,
        )

        assert response.status_code == 200
        assert route.calls.last.request.headers["Authorization"] == "Bearer mistral-test-key"

    def test_invalid_token_is_permission_denied(self, app_client, vendor, provider_keys, signed_in):
        forged = TokenService("someone-elses-secret-0123456789abcdef").issue("user-1", {"permissions": {"deepseek": True}})

        response = app_client.post(
            "/callable/apiProxy",
            json={"token": forged, "endpoint": "chat/completions", "method": "POST"},
            headers=signed_in,
        )

        assert response.status_code == 403
        assert response.json()["error"]["status"] == "PERMISSION_DENIED"
        assert not vendor.calls

    def test_token_without_permission(self, app_client, vendor, provider_keys, signed_in):
        token = tokens.token_service.issue("user-1", {"permissions": {"openai": True}})

        response = app_client.post(
            "/callable/apiProxy",
            json={"token": token, "endpoint": "chat/completions", "method": "POST"},
            headers=signed_in,
        )

        assert response.status_code == 403
        assert not vendor.calls

    def test_expired_token(self, app_client, vendor, provider_keys, signed_in):
        expired = tokens.token_service.issue("user-1", {"permissions": {"deepseek": True}}, expires_in=-1)

        response = app_client.post(
            "/callable/apiProxy",
            json={"token": expired, "endpoint": "chat/completions", "method": "POST"},
            headers=signed_in,
        )

        assert response.status_code == 403

    def test_requires_token_endpoint_and_method(self, app_client, vendor, provider_keys, signed_in):
        response = app_client.post("/callable/apiProxy", json={"endpoint": "x"}, headers=signed_in)

        assert response.status_code == 400
        assert response.json()["error"]["details"]["missing"] == ["token", "method"]

    def test_unsupported_method(self, app_client, vendor, provider_keys, signed_in, issued_token):
        response = app_client.post(
            "/callable/apiProxy",
            json={"token": issued_token, "endpoint": "chat/completions", "method": "DELETE"},
            headers=signed_in,
        )

        assert response.status_code == 400
        assert not vendor.calls
