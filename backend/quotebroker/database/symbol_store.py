"""
Durable symbol records: ticker -> Questrade symbol ID plus slow-changing details.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_

from quotebroker.database.db_service import get_db_service
from quotebroker.database.models import Symbol as SymbolModel
from quotebroker.database.postgres_db import get_db_context

logger = logging.getLogger(__name__)


def needs_detail_refresh(record: Optional[Dict[str, Any]], ttl_minutes: int = 60,
                         now: Optional[datetime] = None) -> bool:
    """True when the record has no details yet or they are older than ttl_minutes."""
    if not record or not record.get("last_detail_update"):
        return True
    now = now or datetime.utcnow()
    return record["last_detail_update"] <= now - timedelta(minutes=ttl_minutes)


class SymbolStore:
    def get(self, ticker: str) -> Optional[Dict[str, Any]]:
        with get_db_context() as session:
            return get_db_service(session).find_one("symbols", {"symbol": ticker.upper()})

    def get_many(self, tickers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        keys = [t.upper() for t in tickers]
        if not keys:
            return {}
        with get_db_context() as session:
            rows = session.query(SymbolModel).filter(SymbolModel.symbol.in_(keys)).all()
            db = get_db_service(session)
            return {row.symbol: db._model_to_dict(row) for row in rows}

    def all_with_ids(self) -> List[Dict[str, Any]]:
        with get_db_context() as session:
            rows = session.query(SymbolModel).filter(
                SymbolModel.symbol_id.isnot(None), SymbolModel.is_active.is_(True)
            ).all()
            db = get_db_service(session)
            return [db._model_to_dict(row) for row in rows]

    def search_prefix(self, prefix: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Tickers starting with prefix, or descriptions containing it."""
        pattern = prefix.upper()
        with get_db_context() as session:
            rows = (
                session.query(SymbolModel)
                .filter(SymbolModel.is_active.is_(True))
                .filter(or_(
                    SymbolModel.symbol.like(f"{pattern}%"),
                    SymbolModel.description.ilike(f"%{prefix}%"),
                ))
                .order_by(SymbolModel.symbol)
                .limit(limit)
                .all()
            )
            db = get_db_service(session)
            return [db._model_to_dict(row) for row in rows]

    def upsert(self, document: Dict[str, Any]) -> Dict[str, Any]:
        document = dict(document)
        ticker = document.pop("symbol").upper()
        document.setdefault("last_updated", datetime.utcnow())
        with get_db_context() as session:
            return get_db_service(session).upsert("symbols", {"symbol": ticker}, document)

    def upsert_many(self, documents: List[Dict[str, Any]]) -> int:
        now = datetime.utcnow()
        payload = []
        for doc in documents:
            doc = dict(doc)
            doc["symbol"] = doc["symbol"].upper()
            doc.setdefault("last_updated", now)
            payload.append(doc)
        with get_db_context() as session:
            return get_db_service(session).bulk_upsert("symbols", "symbol", payload)
