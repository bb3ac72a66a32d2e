"""
Durable quote snapshots, one row per ticker. Used as the warm cache layer and
as the stale fallback when the provider is unavailable.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from quotebroker.database.db_service import get_db_service
from quotebroker.database.models import Quote as QuoteModel
from quotebroker.database.postgres_db import get_db_context

logger = logging.getLogger(__name__)


class QuoteStore:
    def get(self, ticker: str) -> Optional[Dict[str, Any]]:
        with get_db_context() as session:
            return get_db_service(session).find_one("quotes", {"symbol": ticker.upper()})

    def get_many(self, tickers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        keys = [t.upper() for t in tickers]
        if not keys:
            return {}
        with get_db_context() as session:
            rows = session.query(QuoteModel).filter(QuoteModel.symbol.in_(keys)).all()
            db = get_db_service(session)
            return {row.symbol: db._model_to_dict(row) for row in rows}

    def save(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(snapshot)
        ticker = document.pop("symbol").upper()
        with get_db_context() as session:
            return get_db_service(session).upsert("quotes", {"symbol": ticker}, document)

    def save_many(self, snapshots: List[Dict[str, Any]]) -> int:
        if not snapshots:
            return 0
        with get_db_context() as session:
            return get_db_service(session).bulk_upsert("quotes", "symbol", [dict(s) for s in snapshots])

    def count(self) -> int:
        with get_db_context() as session:
            return get_db_service(session).count("quotes")
