"""Tests for Dataverse access token acquisition."""

from __future__ import annotations

from unittest.mock import patch

import httpx
import pytest
from fastapi import HTTPException

from app.config import settings
from app.services import token_manager

CONFIGURED = {
    "dataverse_url": "https://org.example.crm.dynamics.com",
    "dataverse_tenant_id": "tenant-1",
    "dataverse_client_id": "client-1",
    "dataverse_client_secret": "secret",
}


@pytest.fixture(autouse=True)
def reset_token_cache():
    token_manager.clear_token_cache()
    yield
    token_manager.clear_token_cache()


@pytest.fixture
def configured():
    with patch.multiple(settings, **CONFIGURED):
        yield


def _client_factory(handler):
    real_client = httpx.AsyncClient

    def factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    return factory


@pytest.mark.asyncio
async def test_missing_configuration_is_a_server_error():
    with patch.multiple(settings, dataverse_url="", dataverse_client_secret=""):
        with pytest.raises(HTTPException) as excinfo:
            await token_manager.get_access_token()

    assert excinfo.value.status_code == 500
    assert excinfo.value.detail["code"] == "dataverse_not_configured"


@pytest.mark.asyncio
async def test_client_credentials_token_is_cached(configured):
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"access_token": "token-1", "expires_in": 3600})

    with patch.object(token_manager.httpx, "AsyncClient", _client_factory(handler)):
        first = await token_manager.get_access_token()
        second = await token_manager.get_access_token()

    assert first == second == "token-1"
    assert len(requests) == 1
    assert str(requests[0].url) == "https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token"
    body = requests[0].content.decode()
    assert "grant_type=client_credentials" in body
    assert "scope=https%3A%2F%2Forg.example.crm.dynamics.com%2F.default" in body


@pytest.mark.asyncio
async def test_rejected_credentials_are_a_bad_gateway(configured):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "invalid_client"})

    with patch.object(token_manager.httpx, "AsyncClient", _client_factory(handler)):
        with pytest.raises(HTTPException) as excinfo:
            await token_manager.get_access_token()

    assert excinfo.value.status_code == 502
    assert excinfo.value.detail["code"] == "dataverse_auth_failed"
    assert excinfo.value.detail["auth_error"] == {"error": "invalid_client"}


@pytest.mark.asyncio
async def test_get_connection_targets_configured_org(configured):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "token-2", "expires_in": 3600})

    with patch.object(token_manager.httpx, "AsyncClient", _client_factory(handler)):
        conn = await token_manager.get_connection()

    assert conn.access_token == "token-2"
    assert conn.base_url == "https://org.example.crm.dynamics.com/api/data/v9.2/"
