"""
Quote Service

Short-TTL quote cache in front of Questrade's /v1/markets/quotes.

Fresh quotes come from process memory or the quotes table when younger than
MARKET_DATA_CACHE_TTL. A miss triggers one rate-limited provider fetch per
symbol (concurrent misses share it). When the provider fails, the last known
snapshot is served as STALE; with nothing cached the result is NOT_FOUND and
carries the typed error.
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fastapi.concurrency import run_in_threadpool

from quotebroker.config import settings
from quotebroker.database.quote_store import QuoteStore
from quotebroker.services.errors import ErrorCode, ProviderAPIError, QuoteBrokerError, SymbolNotFoundError
from quotebroker.services.memory_cache import ExpiringCache
from quotebroker.services.number_utils import safe_number
from quotebroker.services.questrade_client import QuestradeClient
from quotebroker.services.rate_limiter import AsyncRateLimiter
from quotebroker.services.single_flight import SingleFlight
from quotebroker.services.symbol_resolver import SymbolResolver, parse_provider_time
from quotebroker.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

QuoteSnapshot = Dict[str, Any]


class QuoteStatus(str, enum.Enum):
    FRESH = "fresh"
    STALE = "stale"
    NOT_FOUND = "not_found"


@dataclass
class QuoteResult:
    symbol: str
    status: QuoteStatus
    quote: Optional[QuoteSnapshot] = None
    error_code: Optional[ErrorCode] = None
    error: Optional[str] = None
    failure: Optional[QuoteBrokerError] = None

    @property
    def ok(self) -> bool:
        return self.quote is not None

    def raise_for_status(self) -> QuoteSnapshot:
        """Return the quote, raising the recorded failure for NOT_FOUND results."""
        if self.quote is not None:
            return self.quote
        if self.failure is not None:
            raise self.failure
        raise SymbolNotFoundError(self.error or f"No quote available for {self.symbol}")


def compute_day_change(last_price: float, previous_close: float) -> Tuple[float, float]:
    """Day change and percent against the previous close, both rounded to 2 decimals."""
    if last_price > 0 and previous_close > 0:
        change = last_price - previous_close
        percent = change / previous_close * 100
        return round(safe_number(change), 2), round(safe_number(percent), 2)
    return 0.0, 0.0


def transform_quote(data: Dict[str, Any], details: Optional[Dict[str, Any]] = None) -> QuoteSnapshot:
    """
    Build a quote snapshot from a Questrade quote payload.

    The previous close and fundamentals come from the symbol's detail record,
    not the quote payload, which does not carry a reliable previous close.
    """
    details = details or {}
    last_price = safe_number(data.get("lastTradePrice"))
    previous_close = safe_number(details.get("prev_day_close_price"))
    day_change, day_change_percent = compute_day_change(last_price, previous_close)
    delay = safe_number(data.get("delay"))

    return {
        "symbol": (data.get("symbol") or details.get("symbol") or "").upper(),
        "symbol_id": int(safe_number(data.get("symbolId"))),
        "last_trade_price": last_price,
        "last_trade_size": safe_number(data.get("lastTradeSize")),
        "last_trade_tick": data.get("lastTradeTick"),
        "last_trade_time": parse_provider_time(data.get("lastTradeTime")),
        "bid_price": safe_number(data.get("bidPrice")),
        "bid_size": safe_number(data.get("bidSize")),
        "ask_price": safe_number(data.get("askPrice")),
        "ask_size": safe_number(data.get("askSize")),
        "open_price": safe_number(data.get("openPrice")),
        "high_price": safe_number(data.get("highPrice")),
        "low_price": safe_number(data.get("lowPrice")),
        "close_price": safe_number(data.get("closePrice")),
        "previous_close_price": previous_close,
        "day_change": day_change,
        "day_change_percent": day_change_percent,
        "volume": safe_number(data.get("volume")),
        "average_volume": safe_number(details.get("average_vol_20_days")),
        "vwap": safe_number(data.get("VWAP")),
        "week52_high": safe_number(details.get("high_price_52")),
        "week52_low": safe_number(details.get("low_price_52")),
        "market_cap": safe_number(details.get("market_cap")),
        "eps": safe_number(details.get("eps")),
        "pe": safe_number(details.get("pe")),
        "dividend": safe_number(details.get("dividend")),
        "yield_pct": safe_number(details.get("yield_pct")),
        "exchange": data.get("exchange") or details.get("exchange"),
        "currency": details.get("currency"),
        "is_halted": bool(data.get("isHalted")),
        "delay": delay,
        "is_real_time": delay == 0,
        "last_updated": datetime.utcnow(),
    }


class QuoteService:
    def __init__(self, token_manager: TokenManager, resolver: SymbolResolver, client: QuestradeClient,
                 store: Optional[QuoteStore] = None,
                 limiter: Optional[AsyncRateLimiter] = None,
                 cache: Optional[ExpiringCache] = None,
                 ttl_seconds: Optional[int] = None):
        self.token_manager = token_manager
        self.resolver = resolver
        self.client = client
        self.store = store or QuoteStore()
        self.limiter = limiter or AsyncRateLimiter(settings.QUESTRADE_RATE_LIMIT_PER_SECOND)
        self.ttl_seconds = settings.MARKET_DATA_CACHE_TTL if ttl_seconds is None else ttl_seconds
        self.cache: ExpiringCache = cache if cache is not None else ExpiringCache(ttl=self.ttl_seconds)
        self._fetches = SingleFlight("quote-fetch")
        self.stats = {"hits": 0, "fetches": 0, "stale": 0, "notFound": 0}

    # ---- cache layers -----------------------------------------------

    def _is_fresh(self, snapshot: Optional[QuoteSnapshot]) -> bool:
        if not snapshot or not snapshot.get("last_updated"):
            return False
        return snapshot["last_updated"] > datetime.utcnow() - timedelta(seconds=self.ttl_seconds)

    async def _fresh_cached(self, ticker: str) -> Optional[QuoteSnapshot]:
        snapshot = self.cache.get(ticker)
        if self._is_fresh(snapshot):
            return snapshot
        snapshot = await run_in_threadpool(self.store.get, ticker)
        if self._is_fresh(snapshot):
            self.cache.set(ticker, snapshot)
            return snapshot
        return None

    async def _save(self, snapshots: List[QuoteSnapshot]) -> None:
        for snapshot in snapshots:
            self.cache.set(snapshot["symbol"], snapshot)
        try:
            if len(snapshots) == 1:
                await run_in_threadpool(self.store.save, snapshots[0])
            else:
                await run_in_threadpool(self.store.save_many, snapshots)
        except Exception as e:
            logger.warning(f"Failed to save {len(snapshots)} quote(s): {e}")

    async def _fallback(self, ticker: str, error: QuoteBrokerError) -> QuoteResult:
        snapshot = self.cache.get(ticker) or await run_in_threadpool(self.store.get, ticker)
        if snapshot:
            logger.warning(f"Returning stale quote for {ticker} due to error: {error.message}")
            self.stats["stale"] += 1
            return QuoteResult(ticker, QuoteStatus.STALE, snapshot, error.code, error.message, error)
        self.stats["notFound"] += 1
        return QuoteResult(ticker, QuoteStatus.NOT_FOUND, None, error.code, error.message, error)

    # ---- provider fetch ---------------------------------------------

    async def _details(self, ticker: str, person_name: str) -> Optional[Dict[str, Any]]:
        details = await self.resolver.get_symbol_details(ticker, person_name=person_name)
        if details and details.get("symbol_id"):
            return details
        return None

    async def _fetch_quotes(self, person_name: str, symbol_ids: List[int]) -> List[Dict[str, Any]]:
        async def call(token):
            await self.limiter.acquire()
            return await self.client.get_quotes(token.access_token, token.api_server, symbol_ids)

        self.stats["fetches"] += 1
        try:
            return await self.token_manager.call_with_token(person_name, call, "Quote request")
        except ProviderAPIError as e:
            if e.upstream_status == 429:
                self.limiter.penalize()
            raise

    async def _fetch_one(self, ticker: str) -> QuoteSnapshot:
        person_name = await self.token_manager.select_person()
        details = await self._details(ticker, person_name)
        if details is None:
            lookup = await self.resolver.resolve(ticker, person_name)
            details = {"symbol": ticker, "symbol_id": lookup.symbol_id, "currency": lookup.currency}

        quotes = await self._fetch_quotes(person_name, [details["symbol_id"]])
        if not quotes:
            raise SymbolNotFoundError(f"Questrade returned no quote for {ticker}")

        snapshot = transform_quote(quotes[0], details)
        snapshot["symbol"] = ticker
        await self._save([snapshot])
        return snapshot

    # ---- public -----------------------------------------------------

    async def get_quote(self, symbol: str, force_refresh: bool = False) -> QuoteResult:
        ticker = symbol.strip().upper()
        if not force_refresh:
            cached = await self._fresh_cached(ticker)
            if cached:
                self.stats["hits"] += 1
                return QuoteResult(ticker, QuoteStatus.FRESH, cached)

        try:
            snapshot = await self._fetches.do(ticker, lambda: self._fetch_one(ticker))
        except QuoteBrokerError as e:
            logger.error(f"Failed to get quote for {ticker}: {e.code.value}: {e.message}")
            return await self._fallback(ticker, e)
        return QuoteResult(ticker, QuoteStatus.FRESH, snapshot)

    async def refresh_quote(self, symbol: str) -> QuoteResult:
        return await self.get_quote(symbol, force_refresh=True)

    async def get_multiple_quotes(self, symbols: Iterable[str],
                                  force_refresh: bool = False) -> Dict[str, QuoteResult]:
        """
        Quotes for many tickers with one provider call for everything not fresh.

        Every requested ticker gets a result; failures fall back per ticker.
        """
        tickers = list(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))
        results: Dict[str, QuoteResult] = {}

        to_fetch = []
        if force_refresh:
            to_fetch = tickers
        else:
            stored = None
            for ticker in tickers:
                snapshot = self.cache.get(ticker)
                if not self._is_fresh(snapshot):
                    if stored is None:
                        stored = await run_in_threadpool(self.store.get_many, tickers)
                    snapshot = stored.get(ticker)
                if self._is_fresh(snapshot):
                    self.stats["hits"] += 1
                    results[ticker] = QuoteResult(ticker, QuoteStatus.FRESH, snapshot)
                else:
                    to_fetch.append(ticker)

        if not to_fetch:
            return results

        failures: Dict[str, QuoteBrokerError] = {}
        fetched: Dict[str, QuoteSnapshot] = {}
        try:
            fetched, failures = await self._fetch_many(to_fetch)
        except QuoteBrokerError as e:
            logger.error(f"Failed to fetch {len(to_fetch)} quotes: {e.code.value}: {e.message}")
            failures = {ticker: e for ticker in to_fetch}

        for ticker in to_fetch:
            if ticker in fetched:
                results[ticker] = QuoteResult(ticker, QuoteStatus.FRESH, fetched[ticker])
            else:
                error = failures.get(ticker) or SymbolNotFoundError(f"Questrade returned no quote for {ticker}")
                results[ticker] = await self._fallback(ticker, error)
        return results

    async def _fetch_many(self, tickers: List[str]):
        person_name = await self.token_manager.select_person()
        lookups = await self.resolver.lookup_symbols(tickers, person_name)

        failures: Dict[str, QuoteBrokerError] = {}
        by_id: Dict[int, Dict[str, Any]] = {}
        for ticker in tickers:
            lookup = lookups.get(ticker)
            if lookup is None or not lookup.found:
                failures[ticker] = SymbolNotFoundError(
                    f"Symbol {ticker} not found: {lookup.error if lookup else 'no lookup result'}"
                )
                continue
            details = await self._details(ticker, person_name) or {
                "symbol": ticker, "symbol_id": lookup.symbol_id, "currency": lookup.currency,
            }
            by_id[int(details["symbol_id"])] = dict(details, symbol=ticker)

        if not by_id:
            return {}, failures

        quotes = await self._fetch_quotes(person_name, list(by_id))
        fetched: Dict[str, QuoteSnapshot] = {}
        for data in quotes:
            details = by_id.get(int(safe_number(data.get("symbolId"))))
            if details is None:
                continue
            snapshot = transform_quote(data, details)
            snapshot["symbol"] = details["symbol"]
            fetched[details["symbol"]] = snapshot

        if fetched:
            await self._save(list(fetched.values()))
        return fetched, failures

    def get_stats(self) -> Dict[str, Any]:
        return dict(self.stats, cachedQuotes=len(self.cache), rateLimiter=self.limiter.get_stats())
