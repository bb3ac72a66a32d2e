import asyncio

import pytest

from quotebroker.database.quote_store import QuoteStore
from quotebroker.services.errors import ErrorCode, ProviderAPIError, SymbolNotFoundError
from quotebroker.services.memory_cache import ExpiringCache
from quotebroker.services.number_utils import safe_number
from quotebroker.services.questrade_client import ProviderHTTPError
from quotebroker.services.quote_service import (
    QuoteService,
    QuoteStatus,
    compute_day_change,
    transform_quote,
)
from quotebroker.services.rate_limiter import AsyncRateLimiter

from fakes import AAPL, quote_payload


@pytest.fixture
def quote_service(token_manager, resolver, fake_client):
    return QuoteService(
        token_manager,
        resolver,
        fake_client,
        limiter=AsyncRateLimiter(100),
        cache=ExpiringCache(ttl=10),
        ttl_seconds=10,
    )


def test_day_change_against_previous_close():
    assert compute_day_change(101.50, 100.0) == (1.5, 1.5)


def test_day_change_is_zero_without_previous_close():
    assert compute_day_change(101.50, 0) == (0.0, 0.0)


def test_safe_number_sanitizes_garbage():
    assert safe_number(float("nan")) == 0.0
    assert safe_number(float("inf")) == 0.0
    assert safe_number("12.5") == 12.5
    assert safe_number(None, default=-1) == -1
    assert safe_number(True) == 0.0


def test_transform_quote_uses_stored_details():
    details = {"symbol": "AAPL", "prev_day_close_price": 100.0, "high_price_52": 199.62,
               "currency": "USD", "yield_pct": 0.5}

    snapshot = transform_quote(quote_payload(AAPL, 101.50, volume=float("nan")), details)

    assert snapshot["previous_close_price"] == 100.0
    assert snapshot["day_change"] == 1.5
    assert snapshot["day_change_percent"] == 1.5
    assert snapshot["volume"] == 0.0
    assert snapshot["week52_high"] == 199.62
    assert snapshot["vwap"] == 101.1
    assert snapshot["is_real_time"] is True
    assert snapshot["currency"] == "USD"


async def test_get_quote_fetches_then_serves_cache(quote_service, fake_client, seeded_person):
    result = await quote_service.get_quote("aapl")

    assert result.status == QuoteStatus.FRESH
    assert result.quote["symbol"] == "AAPL"
    assert result.quote["last_trade_price"] == 101.50
    assert result.quote["day_change"] == 1.5
    assert result.quote["day_change_percent"] == 1.5
    assert fake_client.quote_calls == [[8049]]

    again = await quote_service.get_quote("AAPL")
    assert again.status == QuoteStatus.FRESH
    assert fake_client.quote_calls == [[8049]]
    assert QuoteStore().get("AAPL")["last_trade_price"] == 101.50


async def test_concurrent_misses_share_one_fetch(quote_service, fake_client, seeded_person):
    # Warm the symbol layer so only the quote fetch is concurrent
    await quote_service.resolver.get_symbol_details("AAPL")
    fake_client.quote_delay = 0.05

    results = await asyncio.gather(*[quote_service.get_quote("AAPL") for _ in range(5)])

    assert all(r.status == QuoteStatus.FRESH for r in results)
    assert fake_client.quote_calls == [[8049]]


async def test_provider_failure_serves_stale_quote(quote_service, fake_client, seeded_person):
    await quote_service.get_quote("AAPL")
    fake_client.quote_error = ProviderHTTPError(500, "Internal Server Error")

    result = await quote_service.get_quote("AAPL", force_refresh=True)

    assert result.status == QuoteStatus.STALE
    assert result.quote["last_trade_price"] == 101.50
    assert result.error_code == ErrorCode.PROVIDER_API_ERROR
    assert result.raise_for_status() is result.quote


async def test_provider_failure_without_cache_is_not_found(quote_service, fake_client, seeded_person):
    fake_client.quote_error = ProviderHTTPError(500, "Internal Server Error")

    result = await quote_service.get_quote("AAPL")

    assert result.status == QuoteStatus.NOT_FOUND
    assert result.quote is None
    with pytest.raises(ProviderAPIError):
        result.raise_for_status()


async def test_unknown_symbol_is_not_found(quote_service, seeded_person):
    result = await quote_service.get_quote("ZZZZ")

    assert result.status == QuoteStatus.NOT_FOUND
    assert result.error_code == ErrorCode.SYMBOL_NOT_FOUND
    with pytest.raises(SymbolNotFoundError):
        result.raise_for_status()


async def test_multiple_quotes_use_one_provider_call(quote_service, fake_client, seeded_person):
    results = await quote_service.get_multiple_quotes(["AAPL", "msft", "ZZZZ", "AAPL"])

    assert set(results) == {"AAPL", "MSFT", "ZZZZ"}
    assert results["AAPL"].status == QuoteStatus.FRESH
    assert results["MSFT"].quote["day_change"] == 4.0
    assert results["ZZZZ"].status == QuoteStatus.NOT_FOUND
    assert len(fake_client.quote_calls) == 1
    assert sorted(fake_client.quote_calls[0]) == [8049, 27426]


async def test_multiple_quotes_skip_fresh_entries(quote_service, fake_client, seeded_person):
    await quote_service.get_quote("AAPL")

    results = await quote_service.get_multiple_quotes(["AAPL", "MSFT"])

    assert results["AAPL"].status == QuoteStatus.FRESH
    assert fake_client.quote_calls[-1] == [27426]


async def test_throttled_provider_drains_rate_limiter(quote_service, fake_client, seeded_person):
    await quote_service.resolver.get_symbol_details("AAPL")
    fake_client.quote_error = ProviderHTTPError(429, "Too Many Requests")

    result = await quote_service.get_quote("AAPL")

    assert result.status == QuoteStatus.NOT_FOUND
    assert quote_service.limiter.tokens < 1
