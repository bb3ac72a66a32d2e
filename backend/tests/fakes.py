"""Provider fakes and canned Questrade payloads shared by the test suite."""
import asyncio

from quotebroker.services.questrade_client import ProviderHTTPError

API_SERVER = "https://api01.iq.questrade.com/"
SEED_REFRESH_TOKEN = "seed-refresh-token-0000-abcdefghij"

AAPL = {
    "symbol": "AAPL",
    "symbolId": 8049,
    "description": "APPLE INC",
    "securityType": "Stock",
    "listingExchange": "NASDAQ",
    "currency": "USD",
    "isTradable": True,
    "isQuotable": True,
    "prevDayClosePrice": 100.0,
    "highPrice52": 199.62,
    "lowPrice52": 124.17,
    "averageVol20Days": 5000000,
    "eps": 6.1,
    "pe": 31.2,
    "dividend": 0.24,
    "yield": 0.5,
    "marketCap": 2900000000000,
    "industrySector": "Technology",
}

MSFT = {
    "symbol": "MSFT",
    "symbolId": 27426,
    "description": "MICROSOFT CORP",
    "securityType": "Stock",
    "listingExchange": "NASDAQ",
    "currency": "USD",
    "prevDayClosePrice": 400.0,
}


def quote_payload(symbol_data, last_price, **extra):
    payload = {
        "symbol": symbol_data["symbol"],
        "symbolId": symbol_data["symbolId"],
        "lastTradePrice": last_price,
        "lastTradeSize": 100,
        "lastTradeTick": "Up",
        "lastTradeTime": "2026-10-16T15:59:59.000000-04:00",
        "bidPrice": last_price - 0.01,
        "bidSize": 3,
        "askPrice": last_price + 0.01,
        "askSize": 5,
        "openPrice": 100.5,
        "highPrice": 102.0,
        "lowPrice": 99.5,
        "volume": 1200000,
        "VWAP": 101.1,
        "delay": 0,
        "isHalted": False,
    }
    payload.update(extra)
    return payload


class FakeQuestradeClient:
    """In-memory stand-in for QuestradeClient that records every call."""

    def __init__(self):
        self.exchange_calls = []
        self.exchange_error = None
        self.exchange_delay = 0.0
        self.expires_in = 1800
        self.symbols = {"AAPL": AAPL, "MSFT": MSFT}
        self.quotes = {
            AAPL["symbolId"]: quote_payload(AAPL, 101.50),
            MSFT["symbolId"]: quote_payload(MSFT, 404.0),
        }
        self.search_calls = []
        self.symbol_calls = []
        self.quote_calls = []
        self.quote_error = None
        self.quote_delay = 0.0
        self.stream_port = 34567
        self.stream_port_calls = 0
        self.rejected_tokens = set()

    def _check(self, access_token):
        if access_token in self.rejected_tokens:
            raise ProviderHTTPError(401, '{"code":1017,"message":"Access token is invalid"}')

    async def exchange_refresh_token(self, refresh_token):
        self.exchange_calls.append(refresh_token)
        if self.exchange_delay:
            await asyncio.sleep(self.exchange_delay)
        if self.exchange_error:
            raise self.exchange_error
        n = len(self.exchange_calls)
        return {
            "access_token": f"access-{n}",
            "refresh_token": f"rotated-refresh-token-{n:04d}-abcdefgh",
            "api_server": API_SERVER,
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        }

    async def search_symbols(self, access_token, api_server, prefix):
        self._check(access_token)
        self.search_calls.append(prefix)
        return [s for ticker, s in self.symbols.items() if ticker.startswith(prefix.upper())]

    async def get_symbol(self, access_token, api_server, symbol_id):
        self._check(access_token)
        self.symbol_calls.append(symbol_id)
        return next((s for s in self.symbols.values() if s["symbolId"] == symbol_id), None)

    async def get_quotes(self, access_token, api_server, symbol_ids):
        self._check(access_token)
        ids = list(symbol_ids)
        self.quote_calls.append(ids)
        if self.quote_delay:
            await asyncio.sleep(self.quote_delay)
        if self.quote_error:
            raise self.quote_error
        return [self.quotes[i] for i in ids if i in self.quotes]

    async def get_stream_port(self, access_token, api_server, symbol_ids):
        self._check(access_token)
        self.stream_port_calls += 1
        return self.stream_port

    async def get_server_time(self, access_token, api_server):
        self._check(access_token)
        return {"time": "2026-10-17T10:00:00.000000-04:00"}


class FakeRegistry:
    def __init__(self, positions=None):
        self.positions = positions or {}
        self.calls = 0

    async def find_symbols(self, tickers):
        self.calls += 1
        return {t: self.positions[t] for t in tickers if t in self.positions}
