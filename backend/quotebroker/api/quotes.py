import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from quotebroker.config import settings
from quotebroker.models.schemas import MultipleQuotesResponse, QuoteResponse
from quotebroker.services.container import ServiceContainer, get_container
from quotebroker.services.quote_poller import QuotePoller
from quotebroker.services.quote_service import QuoteResult, QuoteStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/quotes", tags=["quotes"])


def to_quote_response(result: QuoteResult) -> QuoteResponse:
    return QuoteResponse(
        symbol=result.symbol,
        status=result.status.value,
        stale=result.status == QuoteStatus.STALE,
        quote=result.quote,
        error_code=result.error_code.value if result.error_code else None,
        error=result.error,
    )


@router.get("", response_model=MultipleQuotesResponse)
async def get_multiple_quotes(
    symbols: str = Query(..., description="Comma separated tickers"),
    force_refresh: bool = False,
    services: ServiceContainer = Depends(get_container)
):
    tickers = [s.strip().upper() for s in symbols.split(",") if s.strip()]
    if not tickers:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one symbol is required"
        )
    if len(tickers) > settings.MAX_SYMBOLS_PER_REQUEST:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum {settings.MAX_SYMBOLS_PER_REQUEST} symbols per request"
        )
    results = await services.quote_service.get_multiple_quotes(tickers, force_refresh)
    return MultipleQuotesResponse(data={ticker: to_quote_response(r) for ticker, r in results.items()})


@router.get("/{symbol}", response_model=QuoteResponse)
async def get_quote(symbol: str, force_refresh: bool = False,
                    services: ServiceContainer = Depends(get_container)):
    result = await services.quote_service.get_quote(symbol, force_refresh)
    result.raise_for_status()
    return to_quote_response(result)


@router.post("/{symbol}/refresh", response_model=QuoteResponse)
async def refresh_quote(symbol: str, services: ServiceContainer = Depends(get_container)):
    result = await services.quote_service.refresh_quote(symbol)
    result.raise_for_status()
    return to_quote_response(result)


@router.get("/{symbol}/stream")
async def stream_quote(
    request: Request,
    symbol: str,
    interval: Optional[float] = Query(None, gt=0, description="Seconds between refreshes"),
    services: ServiceContainer = Depends(get_container)
):
    """Server-sent events: one `data:` frame per refresh until the client disconnects."""
    poller = QuotePoller(
        services.quote_service,
        symbol,
        interval or settings.QUOTE_STREAM_DEFAULT_INTERVAL_SECONDS,
    )

    async def event_stream():
        poller.start()
        try:
            while not await request.is_disconnected():
                result = await poller.next_result()
                yield f"data: {to_quote_response(result).model_dump_json()}\n\n"
        finally:
            await poller.stop()
            logger.info(f"Quote stream for {poller.symbol} closed")

    return StreamingResponse(event_stream(), media_type="text/event-stream")
