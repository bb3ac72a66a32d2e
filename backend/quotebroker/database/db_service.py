"""
Database Service Layer - document-style interface over the ORM models
"""
from typing import List, Optional, Dict, Any, Union
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy import and_
import uuid
import logging

from quotebroker.database.models import (
    Person as PersonModel,
    Token as TokenModel,
    Symbol as SymbolModel,
    Quote as QuoteModel,
    TokenTypeEnum,
)

logger = logging.getLogger(__name__)

# Collection to model mapping
COLLECTION_MODEL_MAP = {
    "persons": PersonModel,
    "tokens": TokenModel,
    "symbols": SymbolModel,
    "quotes": QuoteModel,
}


class DatabaseService:
    """Database service for collection-keyed CRUD operations."""

    def __init__(self, session: Session):
        """
        Initialize database service.

        Args:
            session: SQLAlchemy session (required)
        """
        if session is None:
            raise ValueError("Session is required")
        self.session = session

    def _model_class(self, collection: str):
        model_class = COLLECTION_MODEL_MAP.get(collection)
        if not model_class:
            raise ValueError(f"Unknown collection: {collection}")
        return model_class

    def _model_to_dict(self, model_instance) -> Optional[Dict[str, Any]]:
        """Convert SQLAlchemy model instance to dictionary. Datetimes are kept as objects."""
        if model_instance is None:
            return None

        result = {}
        for column in model_instance.__table__.columns:
            value = getattr(model_instance, column.name)
            # Convert enums to string
            if isinstance(value, TokenTypeEnum):
                value = value.value
            result[column.name] = value
        return result

    def _build_query_filters(self, model_class, query: Dict[str, Any]):
        """Build SQLAlchemy filter conditions from query dict."""
        filters = []
        for key, value in query.items():
            if hasattr(model_class, key):
                filters.append(getattr(model_class, key) == value)
        return filters

    def _coerce_enums(self, collection: str, document: Dict[str, Any]) -> None:
        if collection == "tokens" and isinstance(document.get("type"), str):
            document["type"] = TokenTypeEnum(document["type"].lower())

    def _query(self, collection: str, query: Optional[Dict[str, Any]] = None):
        model_class = self._model_class(collection)
        q = self.session.query(model_class)
        if query:
            query = dict(query)
            self._coerce_enums(collection, query)
            filters = self._build_query_filters(model_class, query)
            if filters:
                q = q.filter(and_(*filters))
        return q

    def insert(self, collection: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a document into the collection."""
        model_class = self._model_class(collection)

        # Add ID if not present
        if 'id' not in document:
            document['id'] = str(uuid.uuid4())

        # Add created_at timestamp only if the model has this field
        if 'created_at' not in document and hasattr(model_class, 'created_at'):
            document['created_at'] = datetime.utcnow()

        self._coerce_enums(collection, document)

        # Create model instance
        instance = model_class(**document)
        self.session.add(instance)
        self.session.flush()

        return self._model_to_dict(instance)

    def find(self, collection: str, query: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Find documents matching the query."""
        results = self._query(collection, query).all()
        return [self._model_to_dict(r) for r in results]

    def find_one(self, collection: str, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Find the first document matching the query."""
        result = self._query(collection, query).first()
        return self._model_to_dict(result) if result else None

    def find_latest(self, collection: str, query: Dict[str, Any],
                    newer_than: Optional[Dict[str, datetime]] = None) -> Optional[Dict[str, Any]]:
        """
        Find the most recently created document matching the query.

        Args:
            collection: Collection name
            query: Equality filters
            newer_than: Optional {column: instant} filters, each requiring column > instant
        """
        model_class = self._model_class(collection)
        q = self._query(collection, query)
        for column, instant in (newer_than or {}).items():
            q = q.filter(getattr(model_class, column) > instant)
        result = q.order_by(model_class.created_at.desc()).first()
        return self._model_to_dict(result) if result else None

    def update(self, collection: str, document_id_or_query: Union[str, Dict[str, Any]],
               update_data: Dict[str, Any] = None) -> int:
        """Update documents matching the query."""
        if update_data is None:
            raise ValueError("update_data is required")

        model_class = self._model_class(collection)

        # Build query
        if isinstance(document_id_or_query, str):
            query = {"id": document_id_or_query}
        else:
            query = document_id_or_query

        q = self._query(collection, query)

        # Add updated_at timestamp
        if 'updated_at' not in update_data and hasattr(model_class, 'updated_at'):
            update_data['updated_at'] = datetime.utcnow()

        count = q.update(update_data, synchronize_session=False)
        self.session.flush()

        return count

    def increment(self, collection: str, query: Dict[str, Any], column: str,
                  update_data: Optional[Dict[str, Any]] = None) -> int:
        """Increment a numeric column on matching documents, applying extra updates."""
        model_class = self._model_class(collection)
        values = dict(update_data or {})
        values[column] = getattr(model_class, column) + 1
        if 'updated_at' not in values and hasattr(model_class, 'updated_at'):
            values['updated_at'] = datetime.utcnow()
        count = self._query(collection, query).update(values, synchronize_session=False)
        self.session.flush()
        return count

    def upsert(self, collection: str, key: Dict[str, Any], document: Dict[str, Any]) -> Dict[str, Any]:
        """Update the document matching key, inserting it when absent."""
        existing = self._query(collection, key).first()
        if existing is None:
            payload = dict(key)
            payload.update(document)
            return self.insert(collection, payload)

        for field, value in document.items():
            if hasattr(existing, field):
                setattr(existing, field, value)
        self.session.flush()
        return self._model_to_dict(existing)

    def bulk_upsert(self, collection: str, key_field: str, documents: List[Dict[str, Any]]) -> int:
        """Upsert many documents keyed by a single unique field in one flush."""
        if not documents:
            return 0

        model_class = self._model_class(collection)
        keys = [doc[key_field] for doc in documents]
        existing = {
            getattr(row, key_field): row
            for row in self.session.query(model_class).filter(getattr(model_class, key_field).in_(keys)).all()
        }

        now = datetime.utcnow()
        for doc in documents:
            row = existing.get(doc[key_field])
            if row is None:
                payload = dict(doc)
                payload.setdefault('id', str(uuid.uuid4()))
                if hasattr(model_class, 'created_at'):
                    payload.setdefault('created_at', now)
                row = model_class(**payload)
                self.session.add(row)
                existing[doc[key_field]] = row
            else:
                for field, value in doc.items():
                    if hasattr(row, field):
                        setattr(row, field, value)

        self.session.flush()
        return len(documents)

    def delete(self, collection: str, document_id_or_query: Union[str, Dict[str, Any]]) -> int:
        """Delete documents matching the query."""
        # Build query
        if isinstance(document_id_or_query, str):
            query = {"id": document_id_or_query}
        else:
            query = document_id_or_query

        count = self._query(collection, query).delete(synchronize_session=False)
        self.session.flush()

        return count

    def count(self, collection: str, query: Optional[Dict[str, Any]] = None) -> int:
        """Count documents matching the query."""
        return self._query(collection, query).count()


def get_db_service(session: Session) -> DatabaseService:
    """
    Get database service instance.

    Args:
        session: SQLAlchemy session (required)

    Returns:
        DatabaseService instance
    """
    return DatabaseService(session)
