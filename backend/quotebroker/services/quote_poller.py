"""
Periodic quote refresh bound to one SSE connection.

The poller owns a single asyncio task that force-refreshes a symbol every
`interval` seconds and hands each result to a bounded queue. The SSE handler
reads from the queue and calls stop() when the client goes away, so no timer
outlives its connection.
"""
import asyncio
import logging
from typing import Optional

from quotebroker.services.errors import QuoteBrokerError
from quotebroker.services.quote_service import QuoteResult, QuoteService, QuoteStatus

logger = logging.getLogger(__name__)


class QuotePoller:
    def __init__(self, quote_service: QuoteService, symbol: str, interval: float, max_pending: int = 1):
        self.quote_service = quote_service
        self.symbol = symbol.upper()
        self.interval = max(float(interval), 0.05)
        self.queue: "asyncio.Queue[QuoteResult]" = asyncio.Queue(maxsize=max_pending)
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> "QuotePoller":
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return self

    async def _run(self) -> None:
        while True:
            try:
                result = await self.quote_service.get_quote(self.symbol, force_refresh=True)
            except Exception as e:
                # Reported to the consumer; the next tick tries again
                logger.error(f"Quote refresh for {self.symbol} failed: {e}")
                failure = QuoteBrokerError(f"Quote refresh for {self.symbol} failed")
                result = QuoteResult(self.symbol, QuoteStatus.NOT_FOUND, error_code=failure.code,
                                     error=failure.message, failure=failure)
            # Slow consumers only ever see the newest result
            if self.queue.full():
                self.queue.get_nowait()
            self.queue.put_nowait(result)
            await asyncio.sleep(self.interval)

    async def next_result(self) -> QuoteResult:
        return await self.queue.get()

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Quote poller for {self.symbol} stopped")

    async def __aenter__(self) -> "QuotePoller":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
