import json

import httpx
import pytest

from quotebroker.services.errors import ErrorCode, ProviderAPIError, TokenError
from quotebroker.services.position_registry import PositionRegistryClient
from quotebroker.services.questrade_client import (
    ProviderHTTPError,
    QuestradeClient,
    as_broker_error,
    normalize_api_server,
)


def make_client(handler):
    return QuestradeClient(auth_url="https://login.questrade.com", transport=httpx.MockTransport(handler))


def test_normalize_api_server():
    assert normalize_api_server("https://api01.iq.questrade.com/") == "https://api01.iq.questrade.com"
    assert normalize_api_server("api05.iq.questrade.com") == "https://api05.iq.questrade.com"
    assert normalize_api_server(None) is None


async def test_exchange_posts_form_to_oauth_endpoint():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        return httpx.Response(200, json={
            "access_token": "a", "refresh_token": "r", "api_server": "https://api01.iq.questrade.com/",
            "expires_in": 1800, "token_type": "Bearer",
        })

    payload = await make_client(handler).exchange_refresh_token("my-refresh-token")

    assert seen["url"] == "https://login.questrade.com/oauth2/token"
    assert "grant_type=refresh_token" in seen["body"]
    assert "refresh_token=my-refresh-token" in seen["body"]
    assert payload["access_token"] == "a"


async def test_error_status_raises_with_body():
    client = make_client(lambda request: httpx.Response(400, text="Bad Request"))

    with pytest.raises(ProviderHTTPError) as exc:
        await client.exchange_refresh_token("x")
    assert exc.value.status == 400
    assert exc.value.body == "Bad Request"


async def test_transport_failure_has_no_status():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderHTTPError) as exc:
        await make_client(handler).get_server_time("token", "https://api01.iq.questrade.com")
    assert exc.value.status is None


async def test_quotes_request_sends_bearer_and_ids():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers["Authorization"]
        seen["path"] = request.url.path
        seen["ids"] = request.url.params["ids"]
        return httpx.Response(200, json={"quotes": [{"symbolId": 8049}]})

    quotes = await make_client(handler).get_quotes("tok", "api01.iq.questrade.com/", [8049, 27426])

    assert seen == {"auth": "Bearer tok", "path": "/v1/markets/quotes", "ids": "8049,27426"}
    assert quotes == [{"symbolId": 8049}]


async def test_stream_port_requires_port_in_response():
    def handler(request):
        assert request.url.params["stream"] == "true"
        assert request.url.params["mode"] == "WebSocket"
        return httpx.Response(200, json={})

    with pytest.raises(ProviderHTTPError):
        await make_client(handler).get_stream_port("tok", "https://api01.iq.questrade.com", [8049])


def test_as_broker_error_mapping():
    unauthorized = as_broker_error(ProviderHTTPError(401, "nope"), "Quote request")
    assert isinstance(unauthorized, TokenError)
    assert unauthorized.code == ErrorCode.TOKEN_INVALID

    outage = as_broker_error(ProviderHTTPError(503, "down"), "Quote request")
    assert isinstance(outage, ProviderAPIError)
    assert outage.upstream_status == 503
    assert outage.to_dict()["errorCode"] == "PROVIDER_API_ERROR"


async def test_position_registry_matches_exact_tickers():
    def handler(request):
        assert request.url.path == "/api/positions"
        return httpx.Response(200, content=json.dumps({"success": True, "data": [
            {"symbol": "AAPL", "symbolId": 8049, "companyName": "Apple", "currency": "USD"},
            {"symbol": "AAPL.TO", "symbolId": 1, "currency": "CAD"},
            {"symbol": "MSFT"},
        ]}))

    registry = PositionRegistryClient("http://sync-api:4002/", transport=httpx.MockTransport(handler))
    found = await registry.find_symbols(["aapl", "msft"])

    assert found == {"AAPL": {"symbol_id": 8049, "symbol": "AAPL", "description": "Apple", "currency": "USD"}}


async def test_position_registry_failure_returns_nothing():
    registry = PositionRegistryClient(
        "http://sync-api:4002", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )
    assert await registry.find_symbols(["AAPL"]) == {}
    assert PositionRegistryClient("").enabled is False


def test_questrade_api_error_is_an_alias():
    assert ErrorCode.QUESTRADE_API_ERROR is ErrorCode.PROVIDER_API_ERROR
