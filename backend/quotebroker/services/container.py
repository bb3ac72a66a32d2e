"""
Builds the service graph once per process.

Every cache is created here and handed to the service that owns it, so tests
can build a container around fakes (client, registry, upstream connector)
without touching module state.
"""
import logging
from typing import Any, Dict, Optional

from quotebroker.config import settings
from quotebroker.database.quote_store import QuoteStore
from quotebroker.database.symbol_store import SymbolStore
from quotebroker.database.token_store import EncryptedTokenStore
from quotebroker.services.encryption import EncryptionService
from quotebroker.services.memory_cache import ExpiringCache, PermanentCache, VariableExpiryCache
from quotebroker.services.position_registry import PositionRegistryClient
from quotebroker.services.questrade_client import QuestradeClient
from quotebroker.services.quote_service import QuoteService
from quotebroker.services.rate_limiter import AsyncRateLimiter
from quotebroker.services.stream_proxy import Connector, StreamProxy
from quotebroker.services.symbol_resolver import SymbolResolver
from quotebroker.services.token_manager import TokenManager

logger = logging.getLogger(__name__)


class ServiceContainer:
    def __init__(self, client: Optional[QuestradeClient] = None,
                 registry: Optional[PositionRegistryClient] = None,
                 connector: Optional[Connector] = None,
                 encryption: Optional[EncryptionService] = None):
        self.client = client or QuestradeClient()
        self.registry = registry or PositionRegistryClient()
        self.limiter = AsyncRateLimiter(settings.QUESTRADE_RATE_LIMIT_PER_SECOND)

        self.token_store = EncryptedTokenStore(encryption, refresh_token_ttl_days=settings.REFRESH_TOKEN_TTL_DAYS)
        self.symbol_store = SymbolStore()
        self.quote_store = QuoteStore()

        self.token_manager = TokenManager(self.token_store, self.client, cache=VariableExpiryCache())
        self.resolver = SymbolResolver(
            self.token_manager,
            self.client,
            store=self.symbol_store,
            registry=self.registry,
            id_cache=PermanentCache(),
            stream_port_cache=ExpiringCache(ttl=settings.STREAM_PORT_TTL_HOURS * 3600),
            limiter=self.limiter,
        )
        self.quote_service = QuoteService(
            self.token_manager,
            self.resolver,
            self.client,
            store=self.quote_store,
            limiter=self.limiter,
            cache=ExpiringCache(ttl=settings.MARKET_DATA_CACHE_TTL),
        )
        self.stream_proxy = StreamProxy(self.token_manager, self.resolver, connector=connector)

    async def startup(self) -> None:
        try:
            await self.resolver.preload_cache()
        except Exception as e:
            # A cold cache only costs extra lookups
            logger.error(f"Failed to preload symbol cache: {e}")

    async def shutdown(self) -> None:
        await self.stream_proxy.close_all()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "tokens": self.token_manager.get_stats(),
            "symbols": self.resolver.get_stats(),
            "quotes": self.quote_service.get_stats(),
            "stream": self.stream_proxy.get_stats(),
        }


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """FastAPI dependency returning the process-wide container, built on first use."""
    global _container
    if _container is None:
        _container = ServiceContainer()
    return _container


def set_container(container: Optional[ServiceContainer]) -> None:
    global _container
    _container = container
