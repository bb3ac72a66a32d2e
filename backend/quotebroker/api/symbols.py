from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from quotebroker.config import settings
from quotebroker.models.schemas import (
    StreamPortResponse,
    SymbolLookupEntry,
    SymbolLookupRequest,
    SymbolLookupResponse,
    SymbolRecord,
)
from quotebroker.services.container import ServiceContainer, get_container
from quotebroker.services.errors import SymbolNotFoundError

router = APIRouter(prefix="/symbols", tags=["symbols"])


def _parse_ids(raw: str) -> List[int]:
    try:
        return [int(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="symbol_ids must be a comma separated list of integers"
        )


@router.post("/lookup", response_model=SymbolLookupResponse)
async def lookup_symbols(payload: SymbolLookupRequest, services: ServiceContainer = Depends(get_container)):
    if len(payload.symbols) > settings.MAX_SYMBOLS_PER_REQUEST:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum {settings.MAX_SYMBOLS_PER_REQUEST} symbols per request"
        )
    lookups = await services.resolver.lookup_symbols(payload.symbols, payload.person_name)
    return SymbolLookupResponse(
        data={ticker: SymbolLookupEntry.model_validate(lookup) for ticker, lookup in lookups.items()}
    )


@router.get("/search", response_model=List[SymbolRecord])
async def search_symbols(
    prefix: str = Query(..., min_length=1),
    limit: int = Query(10, ge=1, le=50),
    person_name: Optional[str] = None,
    services: ServiceContainer = Depends(get_container)
):
    return await services.resolver.search_symbols(prefix.strip().upper(), limit, person_name)


@router.get("/stream-port", response_model=StreamPortResponse)
async def stream_port(
    symbol_ids: str = Query(..., description="Comma separated Questrade symbol IDs"),
    person_name: Optional[str] = None,
    services: ServiceContainer = Depends(get_container)
):
    ids = _parse_ids(symbol_ids)
    if not ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="At least one symbol ID is required"
        )
    person_name = await services.token_manager.select_person(person_name)
    port = await services.resolver.get_stream_port(person_name, ids)
    return StreamPortResponse(person_name=person_name, stream_port=port)


@router.get("/{ticker}/details", response_model=SymbolRecord)
async def symbol_details(ticker: str, force_refresh: bool = False, person_name: Optional[str] = None,
                         services: ServiceContainer = Depends(get_container)):
    record = await services.resolver.get_symbol_details(ticker, force_refresh, person_name)
    if record is None:
        raise SymbolNotFoundError(f"Symbol {ticker.upper()} not found")
    return record
