import asyncio

import pytest

from quotebroker.services.errors import ErrorCode, QuoteBrokerError
from quotebroker.services.quote_poller import QuotePoller
from quotebroker.services.quote_service import QuoteResult, QuoteStatus


class CountingQuoteService:
    def __init__(self):
        self.calls = []

    async def get_quote(self, symbol, force_refresh=False):
        self.calls.append((symbol, force_refresh))
        return QuoteResult(symbol, QuoteStatus.FRESH, {"symbol": symbol, "last_trade_price": len(self.calls)})


class FlakyQuoteService(CountingQuoteService):
    async def get_quote(self, symbol, force_refresh=False):
        if not self.calls:
            self.calls.append((symbol, force_refresh))
            raise RuntimeError("database is locked")
        return await super().get_quote(symbol, force_refresh)


async def test_poller_force_refreshes_until_stopped():
    service = CountingQuoteService()

    async with QuotePoller(service, "aapl", interval=0.01) as poller:
        first = await poller.next_result()
        second = await poller.next_result()
        assert poller.running

    assert not poller.running
    assert first.symbol == "AAPL"
    assert second.quote["last_trade_price"] > first.quote["last_trade_price"]
    assert all(force for _, force in service.calls)

    calls = len(service.calls)
    await asyncio.sleep(0.05)
    assert len(service.calls) == calls


async def test_slow_consumer_only_sees_latest_result():
    service = CountingQuoteService()
    poller = QuotePoller(service, "MSFT", interval=0.01).start()

    await asyncio.sleep(0.08)
    latest = await poller.next_result()
    await poller.stop()

    assert latest.quote["last_trade_price"] >= len(service.calls) - 1


async def test_unexpected_error_is_reported_and_polling_continues():
    service = FlakyQuoteService()

    async with QuotePoller(service, "AAPL", interval=0.01) as poller:
        failed = await asyncio.wait_for(poller.next_result(), 1)
        assert poller.running
        recovered = await asyncio.wait_for(poller.next_result(), 1)

    assert failed.status == QuoteStatus.NOT_FOUND
    assert failed.error_code == ErrorCode.PROVIDER_API_ERROR
    with pytest.raises(QuoteBrokerError):
        failed.raise_for_status()
    assert recovered.status == QuoteStatus.FRESH
