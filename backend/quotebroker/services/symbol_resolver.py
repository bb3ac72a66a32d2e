"""
Symbol Resolver

Turns tickers into Questrade numeric symbol IDs. IDs never change once
assigned, so every hit is promoted into a permanent in-memory cache.

Lookup tiers, cheapest first:
    1. process memory
    2. the sync service's position registry (held positions carry IDs)
    3. the symbols table
    4. Questrade symbol search, one ticker at a time
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from fastapi.concurrency import run_in_threadpool

from quotebroker.config import settings
from quotebroker.database.symbol_store import SymbolStore, needs_detail_refresh
from quotebroker.services.errors import QuoteBrokerError, SymbolNotFoundError
from quotebroker.services.memory_cache import ExpiringCache, PermanentCache
from quotebroker.services.number_utils import safe_number
from quotebroker.services.position_registry import PositionRegistryClient
from quotebroker.services.questrade_client import QuestradeClient
from quotebroker.services.rate_limiter import AsyncRateLimiter
from quotebroker.services.token_manager import TokenManager

logger = logging.getLogger(__name__)


@dataclass
class SymbolLookup:
    symbol: str
    symbol_id: Optional[int]
    description: Optional[str] = None
    currency: Optional[str] = None
    source: Optional[str] = None
    error: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.symbol_id is not None

    def cache_entry(self) -> Dict[str, Any]:
        return {
            "symbol_id": self.symbol_id,
            "symbol": self.symbol,
            "description": self.description,
            "currency": self.currency,
        }


def parse_provider_time(value: Optional[str]) -> Optional[datetime]:
    """Parse a Questrade ISO timestamp into naive UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def symbol_document(data: Dict[str, Any], with_details: bool = False) -> Dict[str, Any]:
    """Map a Questrade symbol payload (search hit or full record) to symbol table columns."""
    doc = {
        "symbol": data["symbol"].upper(),
        "symbol_id": data.get("symbolId"),
        "description": data.get("description"),
        "security_type": data.get("securityType"),
        "exchange": data.get("exchange") or data.get("listingExchange"),
        "currency": data.get("currency"),
        "is_tradable": data.get("isTradable"),
        "is_quotable": data.get("isQuotable"),
        "has_options": data.get("hasOptions"),
        "last_updated": datetime.utcnow(),
    }
    if with_details:
        doc.update({
            "listing_exchange": data.get("listingExchange"),
            "prev_day_close_price": safe_number(data.get("prevDayClosePrice")),
            "high_price_52": safe_number(data.get("highPrice52")),
            "low_price_52": safe_number(data.get("lowPrice52")),
            "average_vol_3_months": safe_number(data.get("averageVol3Months")),
            "average_vol_20_days": safe_number(data.get("averageVol20Days")),
            "outstanding_shares": safe_number(data.get("outstandingShares")),
            "eps": safe_number(data.get("eps")),
            "pe": safe_number(data.get("pe")),
            "dividend": safe_number(data.get("dividend")),
            "yield_pct": safe_number(data.get("yield")),
            "market_cap": safe_number(data.get("marketCap")),
            "trade_unit": safe_number(data.get("tradeUnit"), default=1.0) or 1.0,
            "ex_date": parse_provider_time(data.get("exDate")),
            "dividend_date": parse_provider_time(data.get("dividendDate")),
            "sector": data.get("industrySector"),
            "industry": data.get("industryGroup"),
            "industry_subgroup": data.get("industrySubgroup"),
            "last_detail_update": datetime.utcnow(),
        })
    return {k: v for k, v in doc.items() if v is not None}


class SymbolResolver:
    def __init__(self, token_manager: TokenManager, client: QuestradeClient,
                 store: Optional[SymbolStore] = None,
                 registry: Optional[PositionRegistryClient] = None,
                 id_cache: Optional[PermanentCache] = None,
                 stream_port_cache: Optional[ExpiringCache] = None,
                 limiter: Optional[AsyncRateLimiter] = None):
        self.token_manager = token_manager
        self.client = client
        self.store = store or SymbolStore()
        self.registry = registry or PositionRegistryClient()
        self.id_cache: PermanentCache = id_cache if id_cache is not None else PermanentCache()
        self.stream_port_cache: ExpiringCache = (
            stream_port_cache if stream_port_cache is not None
            else ExpiringCache(ttl=settings.STREAM_PORT_TTL_HOURS * 3600)
        )
        self.limiter = limiter
        self.provider_searches = 0

    def _promote(self, lookup: SymbolLookup) -> None:
        self.id_cache.set(lookup.symbol, lookup.cache_entry())

    async def _search_exact(self, person_name: str, ticker: str) -> Optional[Dict[str, Any]]:
        async def call(token):
            if self.limiter:
                await self.limiter.acquire()
            return await self.client.search_symbols(token.access_token, token.api_server, ticker)

        self.provider_searches += 1
        results = await self.token_manager.call_with_token(person_name, call, f"Symbol search for {ticker}")
        return next((s for s in results if (s.get("symbol") or "").upper() == ticker), None)

    async def lookup_symbols(self, tickers: Iterable[str],
                             person_name: Optional[str] = None) -> Dict[str, SymbolLookup]:
        """
        Resolve tickers to symbol IDs.

        Every requested ticker gets an entry; unresolved ones carry
        symbol_id=None and an error message.
        """
        wanted = list(dict.fromkeys(t.strip().upper() for t in tickers if t and t.strip()))
        result: Dict[str, SymbolLookup] = {}

        # Tier 1: memory
        pending = []
        for ticker in wanted:
            entry = self.id_cache.get(ticker)
            if entry:
                result[ticker] = SymbolLookup(source="memory", **entry)
            else:
                pending.append(ticker)
        if not pending:
            logger.debug(f"All {len(wanted)} symbols found in memory cache")
            return result

        # Tier 2: position registry
        for ticker, entry in (await self.registry.find_symbols(pending)).items():
            lookup = SymbolLookup(source="positions", **entry)
            self._promote(lookup)
            result[ticker] = lookup
            logger.info(f"Found {ticker} in position registry: symbolId={lookup.symbol_id}")
        pending = [t for t in pending if t not in result]
        if not pending:
            return result

        # Tier 3: symbols table
        stored = await run_in_threadpool(self.store.get_many, pending)
        for ticker in pending:
            record = stored.get(ticker)
            if record and record.get("symbol_id"):
                lookup = SymbolLookup(
                    symbol=ticker,
                    symbol_id=record["symbol_id"],
                    description=record.get("description"),
                    currency=record.get("currency"),
                    source="store",
                )
                self._promote(lookup)
                result[ticker] = lookup
        pending = [t for t in pending if t not in result]
        if not pending:
            return result

        # Tier 4: provider search
        logger.info(f"Fetching {len(pending)} symbols from Questrade: {', '.join(pending)}")
        try:
            person_name = await self.token_manager.select_person(person_name)
        except QuoteBrokerError as e:
            for ticker in pending:
                result[ticker] = SymbolLookup(symbol=ticker, symbol_id=None, error=e.message)
            return result

        for ticker in pending:
            try:
                match = await self._search_exact(person_name, ticker)
            except QuoteBrokerError as e:
                logger.error(f"Failed to lookup symbol {ticker}: {e.message}")
                result[ticker] = SymbolLookup(symbol=ticker, symbol_id=None, error=e.message)
                continue

            if not match or not match.get("symbolId"):
                logger.warning(f"Symbol {ticker} not found in Questrade")
                result[ticker] = SymbolLookup(symbol=ticker, symbol_id=None, error="Symbol not found")
                continue

            await run_in_threadpool(self.store.upsert, symbol_document(match))
            lookup = SymbolLookup(
                symbol=ticker,
                symbol_id=int(match["symbolId"]),
                description=match.get("description"),
                currency=match.get("currency"),
                source="provider",
            )
            self._promote(lookup)
            result[ticker] = lookup
            logger.info(f"Fetched {ticker} from Questrade: symbolId={lookup.symbol_id}")

        return result

    async def resolve(self, ticker: str, person_name: Optional[str] = None) -> SymbolLookup:
        """Resolve a single ticker, raising SymbolNotFoundError when it cannot be."""
        ticker = ticker.strip().upper()
        lookup = (await self.lookup_symbols([ticker], person_name)).get(ticker)
        if lookup is None or not lookup.found:
            raise SymbolNotFoundError(f"Symbol {ticker} not found: {lookup.error if lookup else 'empty ticker'}")
        return lookup

    async def get_stream_port(self, person_name: str, symbol_ids: List[int]) -> int:
        """Stream port for the identity, cached for STREAM_PORT_TTL_HOURS."""
        cached = self.stream_port_cache.get(person_name)
        if cached:
            return cached

        async def call(token):
            return await self.client.get_stream_port(token.access_token, token.api_server, symbol_ids)

        port = await self.token_manager.call_with_token(person_name, call, "Stream port request")
        self.stream_port_cache.set(person_name, port)
        logger.info(f"Got stream port {port} from Questrade for {person_name}")
        return port

    async def get_symbol_details(self, ticker: str, force_refresh: bool = False,
                                 person_name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Stored symbol record with fundamentals, refreshed from Questrade when
        older than SYMBOL_DETAIL_TTL_MINUTES. Falls back to the stored record
        when the refresh fails.
        """
        ticker = ticker.strip().upper()
        existing = await run_in_threadpool(self.store.get, ticker)
        if not force_refresh and not needs_detail_refresh(existing, settings.SYMBOL_DETAIL_TTL_MINUTES):
            return existing

        try:
            person_name = await self.token_manager.select_person(person_name)
            symbol_id = existing.get("symbol_id") if existing else None
            if not symbol_id:
                match = await self._search_exact(person_name, ticker)
                if not match:
                    logger.warning(f"Symbol {ticker} not found in Questrade")
                    return existing
                symbol_id = match["symbolId"]

            async def call(token):
                if self.limiter:
                    await self.limiter.acquire()
                return await self.client.get_symbol(token.access_token, token.api_server, symbol_id)

            details = await self.token_manager.call_with_token(person_name, call, f"Symbol details for {ticker}")
        except QuoteBrokerError as e:
            logger.error(f"Error getting symbol details for {ticker}: {e.message}")
            return existing

        if not details:
            return existing

        record = await run_in_threadpool(self.store.upsert, symbol_document(details, with_details=True))
        self._promote(SymbolLookup(
            symbol=ticker,
            symbol_id=record["symbol_id"],
            description=record.get("description"),
            currency=record.get("currency"),
        ))
        logger.info(f"Updated symbol details for {ticker}")
        return record

    async def search_symbols(self, prefix: str, limit: int = 10,
                             person_name: Optional[str] = None) -> List[Dict[str, Any]]:
        """Prefix search against the symbols table, falling back to Questrade on a miss."""
        local = await run_in_threadpool(self.store.search_prefix, prefix, limit)
        if local:
            return local

        person_name = await self.token_manager.select_person(person_name)

        async def call(token):
            if self.limiter:
                await self.limiter.acquire()
            return await self.client.search_symbols(token.access_token, token.api_server, prefix)

        results = await self.token_manager.call_with_token(person_name, call, f"Symbol search for {prefix}")
        documents = [symbol_document(s) for s in results[:limit] if s.get("symbol")]
        if documents:
            await run_in_threadpool(self.store.upsert_many, documents)
        return documents

    async def preload_cache(self) -> int:
        """Warm the ID cache from the symbols table. Returns the number of IDs loaded."""
        logger.info("Preloading symbol IDs into memory cache...")
        records = await run_in_threadpool(self.store.all_with_ids)
        self.id_cache.update({
            r["symbol"]: {
                "symbol_id": r["symbol_id"],
                "symbol": r["symbol"],
                "description": r.get("description"),
                "currency": r.get("currency"),
            }
            for r in records
        })
        logger.info(f"Preloaded {len(self.id_cache)} symbol IDs into memory cache")
        return len(records)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cachedSymbolIds": len(self.id_cache),
            "cachedStreamPorts": len(self.stream_port_cache),
            "providerSearches": self.provider_searches,
        }
