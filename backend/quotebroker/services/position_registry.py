"""
Client for the sync service's position registry.

Held positions already carry their Questrade symbol IDs, so looking there
first avoids a provider search for the tickers users actually own. The
registry is optional: when SYNC_API_URL is unset or the call fails, callers
get an empty list and move on to the next lookup tier.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx

from quotebroker.config import settings

logger = logging.getLogger(__name__)


class PositionRegistryClient:
    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        base_url = base_url if base_url is not None else settings.SYNC_API_URL
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout = timeout or settings.POSITION_REGISTRY_TIMEOUT_SECONDS
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def get_positions(self) -> List[Dict[str, Any]]:
        if not self.enabled:
            return []

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/positions")
                response.raise_for_status()
                payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Could not fetch positions from registry: {e}")
            return []

        if not isinstance(payload, dict) or not payload.get("success"):
            return []
        data = payload.get("data")
        return data if isinstance(data, list) else []

    async def find_symbols(self, tickers: List[str]) -> Dict[str, Dict[str, Any]]:
        """
        Match tickers exactly against held positions.

        Returns:
            {TICKER: {symbol_id, symbol, description, currency}} for positions
            that carry a symbol ID
        """
        wanted = {t.upper() for t in tickers}
        if not wanted:
            return {}

        found = {}
        for position in await self.get_positions():
            ticker = position.get("symbol")
            symbol_id = position.get("symbolId")
            if ticker in wanted and symbol_id and ticker not in found:
                found[ticker] = {
                    "symbol_id": int(symbol_id),
                    "symbol": ticker,
                    "description": position.get("companyName") or ticker,
                    "currency": position.get("currency") or "USD",
                }
        return found
