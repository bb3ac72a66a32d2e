"""
Durable, encrypted storage for identities and their token records.

All methods are synchronous and open their own session through
get_db_context(); async callers run them in the threadpool.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from quotebroker.database.db_service import get_db_service
from quotebroker.database.models import TokenTypeEnum
from quotebroker.database.postgres_db import get_db_context
from quotebroker.services.encryption import EncryptionService

logger = logging.getLogger(__name__)


class EncryptedTokenStore:
    def __init__(self, encryption: Optional[EncryptionService] = None, refresh_token_ttl_days: int = 7):
        self.encryption = encryption or EncryptionService()
        self.refresh_token_ttl_days = refresh_token_ttl_days

    # ---- identities -------------------------------------------------

    def get_person(self, person_name: str) -> Optional[Dict[str, Any]]:
        with get_db_context() as session:
            return get_db_service(session).find_one("persons", {"person_name": person_name})

    def list_persons(self, active_only: bool = True) -> List[Dict[str, Any]]:
        with get_db_context() as session:
            query = {"is_active": True} if active_only else None
            persons = get_db_service(session).find("persons", query)
        return sorted(persons, key=lambda p: p["created_at"])

    def first_available_person(self) -> Optional[Dict[str, Any]]:
        """Oldest active identity whose credentials were last known to work."""
        with get_db_context() as session:
            persons = get_db_service(session).find("persons", {"is_active": True, "has_valid_token": True})
        if not persons:
            return None
        return min(persons, key=lambda p: p["created_at"])

    # ---- token records ----------------------------------------------

    def get_active_token(self, person_name: str, token_type: TokenTypeEnum) -> Optional[Dict[str, Any]]:
        with get_db_context() as session:
            return get_db_service(session).find_latest(
                "tokens", {"person_name": person_name, "type": token_type, "is_active": True}
            )

    def find_valid_access_token(self, person_name: str, buffer_seconds: int) -> Optional[Dict[str, Any]]:
        """Newest active access record expiring more than buffer_seconds from now."""
        cutoff = datetime.utcnow() + timedelta(seconds=buffer_seconds)
        with get_db_context() as session:
            return get_db_service(session).find_latest(
                "tokens",
                {"person_name": person_name, "type": TokenTypeEnum.ACCESS, "is_active": True},
                newer_than={"expires_at": cutoff},
            )

    def mark_used(self, token_id: str) -> None:
        with get_db_context() as session:
            get_db_service(session).update("tokens", token_id, {"last_used": datetime.utcnow()})

    def decrypt(self, record: Dict[str, Any]) -> str:
        return self.encryption.decrypt(record["encrypted_token"], record["iv"])

    def replace_tokens(self, person_name: str, access_token: str, refresh_token: str,
                       api_server: str, expires_in: int,
                       display_name: Optional[str] = None,
                       reactivate: bool = False) -> Optional[Dict[str, Any]]:
        """
        Retire every active token of the identity and persist the new pair.

        Runs in a single transaction: either both new records become active and
        the identity is marked healthy, or nothing changes.

        Only setup passes reactivate=True, which creates a missing identity or
        reactivates a deactivated one. A plain refresh for an identity that is
        missing or inactive writes nothing.

        Returns:
            The new access record, or None when the identity is not active
        """
        now = datetime.utcnow()
        encrypted_access, access_iv = self.encryption.encrypt(access_token)
        encrypted_refresh, refresh_iv = self.encryption.encrypt(refresh_token)

        with get_db_context() as session:
            db = get_db_service(session)

            if not reactivate:
                person = db.find_one("persons", {"person_name": person_name})
                if not person or not person["is_active"]:
                    logger.warning(f"Discarding refreshed tokens for {person_name}: identity is not active")
                    return None

            retired = db.update(
                "tokens", {"person_name": person_name, "is_active": True}, {"is_active": False}
            )
            logger.debug(f"Retired {retired} old tokens for {person_name}")

            access_record = db.insert("tokens", {
                "type": TokenTypeEnum.ACCESS,
                "person_name": person_name,
                "encrypted_token": encrypted_access,
                "iv": access_iv,
                "api_server": api_server,
                "expires_at": now + timedelta(seconds=expires_in),
                "is_active": True,
                "created_at": now,
            })
            db.insert("tokens", {
                "type": TokenTypeEnum.REFRESH,
                "person_name": person_name,
                "encrypted_token": encrypted_refresh,
                "iv": refresh_iv,
                "expires_at": now + timedelta(days=self.refresh_token_ttl_days),
                "is_active": True,
                "created_at": now,
            })

            person_update = {
                "is_active": True,
                "has_valid_token": True,
                "last_token_refresh": now,
                "last_token_error": None,
                "updated_at": now,
            }
            if display_name:
                person_update["display_name"] = display_name
            db.upsert("persons", {"person_name": person_name}, person_update)

        return access_record

    def record_token_error(self, person_name: str, message: str) -> None:
        """Bump the active refresh record's error counter and mark the identity unhealthy."""
        now = datetime.utcnow()
        with get_db_context() as session:
            db = get_db_service(session)
            db.increment(
                "tokens",
                {"person_name": person_name, "type": TokenTypeEnum.REFRESH, "is_active": True},
                "error_count",
                {"last_error": message, "last_used": now},
            )
            db.update("persons", {"person_name": person_name},
                      {"has_valid_token": False, "last_token_error": message})

    def record_success(self, person_name: str) -> None:
        with get_db_context() as session:
            get_db_service(session).update(
                "tokens",
                {"person_name": person_name, "type": TokenTypeEnum.REFRESH, "is_active": True},
                {"last_successful_use": datetime.utcnow(), "error_count": 0, "last_error": None},
            )

    def deactivate_person(self, person_name: str) -> bool:
        """Retire every token and mark the identity inactive. Returns False for unknown identities."""
        with get_db_context() as session:
            db = get_db_service(session)
            db.update("tokens", {"person_name": person_name, "is_active": True}, {"is_active": False})
            count = db.update("persons", {"person_name": person_name},
                              {"is_active": False, "has_valid_token": False})
        return count > 0

    def delete_person(self, person_name: str) -> bool:
        with get_db_context() as session:
            db = get_db_service(session)
            db.delete("tokens", {"person_name": person_name})
            count = db.delete("persons", {"person_name": person_name})
        return count > 0

    def count_active_tokens(self, person_name: str, token_type: TokenTypeEnum) -> int:
        with get_db_context() as session:
            return get_db_service(session).count(
                "tokens", {"person_name": person_name, "type": token_type, "is_active": True}
            )
