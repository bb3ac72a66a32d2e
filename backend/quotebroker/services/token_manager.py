"""
Token Manager

Serves valid Questrade access tokens per identity from a layered cache
(process memory, then the encrypted token store) and refreshes them through
the OAuth endpoint when neither layer holds a token with enough life left.

Concurrent refresh needs for one identity share a single in-flight exchange:
Questrade rotates the refresh token on every use, so two parallel exchanges
would leave one caller holding a token the provider already invalidated.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi.concurrency import run_in_threadpool

from quotebroker.config import settings
from quotebroker.database.models import TokenTypeEnum
from quotebroker.database.token_store import EncryptedTokenStore
from quotebroker.services.encryption import TokenDecryptionError
from quotebroker.services.errors import (
    ErrorCode,
    IdentityNotFoundError,
    ProviderAPIError,
    QuoteBrokerError,
    TokenError,
)
from quotebroker.services.memory_cache import VariableExpiryCache
from quotebroker.services.questrade_client import (
    ProviderHTTPError,
    QuestradeClient,
    as_broker_error,
    normalize_api_server,
)
from quotebroker.services.single_flight import SingleFlight

logger = logging.getLogger(__name__)

InvalidationListener = Callable[[str], Awaitable[None]]


@dataclass
class AccessToken:
    access_token: str
    api_server: str
    person_name: str
    expires_at: datetime

    def seconds_left(self, now: Optional[datetime] = None) -> float:
        return (self.expires_at - (now or datetime.utcnow())).total_seconds()


@dataclass
class SetupResult:
    success: bool
    person_name: str
    api_server: str
    expires_at: datetime


@dataclass
class TokenRecordStatus:
    exists: bool
    expires_at: Optional[datetime] = None
    last_used: Optional[datetime] = None
    error_count: int = 0
    last_error: Optional[str] = None
    api_server: Optional[str] = None


@dataclass
class TokenStatus:
    person_name: str
    refresh_token: TokenRecordStatus
    access_token: TokenRecordStatus
    is_healthy: bool


@dataclass
class ConnectionTestResult:
    success: bool
    person_name: str
    api_server: str
    server_time: Optional[str] = None


class TokenManager:
    def __init__(self, store: EncryptedTokenStore, client: QuestradeClient,
                 cache: Optional[VariableExpiryCache] = None,
                 buffer_seconds: Optional[int] = None,
                 min_refresh_token_length: Optional[int] = None):
        self.store = store
        self.client = client
        self.cache: VariableExpiryCache = cache if cache is not None else VariableExpiryCache()
        self.buffer_seconds = settings.TOKEN_EXPIRY_BUFFER_SECONDS if buffer_seconds is None else buffer_seconds
        self.min_refresh_token_length = min_refresh_token_length or settings.MIN_REFRESH_TOKEN_LENGTH
        self._refreshes = SingleFlight("token-refresh")
        self._listeners: List[InvalidationListener] = []
        # Bumped on deactivate/delete so refreshes started earlier cannot repopulate the cache
        self._revocations: Dict[str, int] = {}
        self.refresh_count = 0

    # ---- memory layer -----------------------------------------------

    def _usable(self, token: Optional[AccessToken]) -> bool:
        return token is not None and token.seconds_left() > self.buffer_seconds

    def _cached(self, person_name: str) -> Optional[AccessToken]:
        token = self.cache.get(person_name)
        if self._usable(token):
            return token
        if token is not None:
            logger.info(f"Cached token for {person_name} expired or expiring soon, clearing cache")
            self.cache.delete(person_name)
        return None

    def _remember(self, token: AccessToken) -> None:
        ttl = token.seconds_left() - self.buffer_seconds
        if ttl > 0:
            self.cache.set(token.person_name, token, ttl=ttl)

    def invalidate(self, person_name: str) -> None:
        """Forget the cached access token so the next call goes to the store or refreshes."""
        self.cache.delete(person_name)

    # ---- lookups ----------------------------------------------------

    async def get_valid_access_token(self, person_name: str) -> AccessToken:
        """
        Get an access token with more than the safety buffer left before expiry.

        Order: memory, an in-flight refresh for this identity, the newest
        active stored record, and finally an OAuth refresh.
        """
        token = self._cached(person_name)
        if token:
            return token

        if self._refreshes.in_flight(person_name):
            return await self.refresh_access_token(person_name)

        record = await run_in_threadpool(self.store.find_valid_access_token, person_name, self.buffer_seconds)

        # A refresh may have landed while the store was being read
        token = self._cached(person_name)
        if token:
            return token
        if self._refreshes.in_flight(person_name):
            return await self.refresh_access_token(person_name)

        if record:
            try:
                access_token = self.store.decrypt(record)
            except TokenDecryptionError:
                logger.warning(f"Stored access token for {person_name} could not be decrypted, refreshing")
            else:
                await run_in_threadpool(self.store.mark_used, record["id"])
                token = AccessToken(
                    access_token=access_token,
                    api_server=normalize_api_server(record["api_server"]),
                    person_name=person_name,
                    expires_at=record["expires_at"],
                )
                self._remember(token)
                logger.info(f"Found valid stored token for {person_name}, expires in {int(token.seconds_left())}s")
                return token

        logger.info(f"No valid access token for {person_name}, triggering OAuth refresh")
        return await self.refresh_access_token(person_name)

    async def refresh_access_token(self, person_name: str) -> AccessToken:
        """Exchange the stored refresh token, joining any exchange already running for this identity."""
        return await self._refreshes.do(person_name, lambda: self._refresh(person_name))

    async def _refresh(self, person_name: str) -> AccessToken:
        revocation = self._revocations.get(person_name, 0)
        try:
            refresh_token = await self._load_refresh_token(person_name)
            logger.info(f"Refreshing access token for {person_name} via Questrade OAuth")
            try:
                payload = await self.client.exchange_refresh_token(refresh_token)
            except ProviderHTTPError as e:
                raise self._classify_exchange_error(person_name, e) from e
            access_token, new_refresh_token, api_server, expires_in = self._parse_exchange(payload)
        except QuoteBrokerError as e:
            await run_in_threadpool(self.store.record_token_error, person_name, e.message)
            logger.error(f"Token refresh failed for {person_name}: {e.code.value}: {e.message}")
            raise

        record = await run_in_threadpool(
            self.store.replace_tokens, person_name, access_token, new_refresh_token, api_server, expires_in
        )
        if record is None or self._revocations.get(person_name, 0) != revocation:
            self.invalidate(person_name)
            logger.warning(f"Person {person_name} was deactivated during token refresh, discarding new token")
            raise TokenError(f"No active refresh token found for {person_name}", code=ErrorCode.TOKEN_MISSING)
        token = AccessToken(
            access_token=access_token,
            api_server=api_server,
            person_name=person_name,
            expires_at=record["expires_at"],
        )
        self._remember(token)
        self.refresh_count += 1
        logger.info(f"Token refreshed for {person_name} (expires in {expires_in}s, server {api_server})")
        return token

    async def _load_refresh_token(self, person_name: str) -> str:
        record = await run_in_threadpool(self.store.get_active_token, person_name, TokenTypeEnum.REFRESH)
        if not record:
            raise TokenError(f"No active refresh token found for {person_name}", code=ErrorCode.TOKEN_MISSING)

        if record["expires_at"] <= datetime.utcnow():
            raise TokenError(f"Refresh token for {person_name} has expired", code=ErrorCode.TOKEN_EXPIRED)

        try:
            refresh_token = self.store.decrypt(record)
        except TokenDecryptionError as e:
            raise TokenError(f"Stored refresh token for {person_name} could not be decrypted",
                             code=ErrorCode.TOKEN_INVALID) from e

        if len(refresh_token) < self.min_refresh_token_length:
            raise TokenError(f"Invalid refresh token format for {person_name}", code=ErrorCode.TOKEN_INVALID)
        return refresh_token

    def _classify_exchange_error(self, person_name: str, error: ProviderHTTPError) -> QuoteBrokerError:
        if error.status == 400:
            code = ErrorCode.TOKEN_EXPIRED if "expired" in error.body.lower() else ErrorCode.TOKEN_INVALID
            return TokenError(
                f"Invalid or expired refresh token for {person_name}. Please update the refresh token.",
                code=code,
            )
        if error.status == 401:
            return TokenError(f"Unauthorized access for {person_name}. Token may be invalid.",
                              code=ErrorCode.TOKEN_INVALID)
        return ProviderAPIError(f"Questrade token exchange failed for {person_name}: {error}",
                                upstream_status=error.status)

    def _parse_exchange(self, payload: Dict[str, Any]):
        access_token = payload.get("access_token")
        refresh_token = payload.get("refresh_token")
        if not access_token or not refresh_token:
            raise ProviderAPIError("Invalid response from Questrade API - missing tokens")
        api_server = normalize_api_server(payload.get("api_server"))
        if not api_server:
            raise ProviderAPIError("Invalid response from Questrade API - missing api_server")
        expires_in = payload.get("expires_in")
        try:
            expires_in = 1800 if expires_in is None else max(int(expires_in), 0)
        except (TypeError, ValueError):
            expires_in = 1800
        return access_token, refresh_token, api_server, expires_in

    async def call_with_token(self, person_name: str, call: Callable[[AccessToken], Awaitable[Any]],
                              context: str = "Questrade request") -> Any:
        """
        Run a provider call with the identity's token.

        A 401 means the token was revoked before its stated expiry: the token
        is refreshed once and the call retried. Any other provider failure is
        raised as a typed error.
        """
        token = await self.get_valid_access_token(person_name)
        try:
            return await call(token)
        except ProviderHTTPError as e:
            if e.status != 401:
                raise as_broker_error(e, context) from e
            logger.info(f"Access token for {person_name} rejected, refreshing and retrying")

        self.invalidate(person_name)
        token = await self.refresh_access_token(person_name)
        try:
            return await call(token)
        except ProviderHTTPError as e:
            raise as_broker_error(e, context) from e

    # ---- operator actions -------------------------------------------

    async def setup_person_token(self, person_name: str, raw_refresh_token: str,
                                 display_name: Optional[str] = None) -> SetupResult:
        """
        Register (or replace) an identity's refresh token.

        The token is exchanged once as a trial. Nothing is persisted unless the
        exchange succeeds, in which case the identity is created or reactivated
        and its records are replaced in one transaction.
        """
        clean_token = (raw_refresh_token or "").strip()
        if len(clean_token) < self.min_refresh_token_length:
            raise TokenError("Invalid refresh token format", code=ErrorCode.TOKEN_INVALID)

        logger.info(f"Setting up token for {person_name}")
        try:
            payload = await self.client.exchange_refresh_token(clean_token)
        except ProviderHTTPError as e:
            error = self._classify_exchange_error(person_name, e)
            logger.error(f"Token setup failed for {person_name}: {error.code.value} (status {e.status})")
            raise error from e
        access_token, new_refresh_token, api_server, expires_in = self._parse_exchange(payload)

        record = await run_in_threadpool(
            self.store.replace_tokens, person_name, access_token, new_refresh_token, api_server, expires_in,
            display_name, reactivate=True,
        )
        token = AccessToken(access_token, api_server, person_name, record["expires_at"])
        self._remember(token)
        logger.info(f"Refresh token setup successfully for {person_name}")
        return SetupResult(success=True, person_name=person_name, api_server=api_server,
                           expires_at=record["expires_at"])

    async def get_token_status(self, person_name: str) -> TokenStatus:
        """Report token health from stored metadata, without decrypting anything."""
        refresh = await run_in_threadpool(self.store.get_active_token, person_name, TokenTypeEnum.REFRESH)
        access = await run_in_threadpool(self.store.find_valid_access_token, person_name, self.buffer_seconds)

        refresh_status = TokenRecordStatus(exists=refresh is not None)
        if refresh:
            refresh_status.expires_at = refresh["expires_at"]
            refresh_status.last_used = refresh["last_used"]
            refresh_status.error_count = refresh["error_count"] or 0
            refresh_status.last_error = refresh["last_error"]

        access_status = TokenRecordStatus(exists=access is not None)
        if access:
            access_status.expires_at = access["expires_at"]
            access_status.last_used = access["last_used"]
            access_status.api_server = access["api_server"]

        is_healthy = bool(refresh) and (bool(access) or not refresh["last_error"])
        return TokenStatus(person_name=person_name, refresh_token=refresh_status,
                           access_token=access_status, is_healthy=is_healthy)

    async def test_connection(self, person_name: str) -> ConnectionTestResult:
        """Call the provider's /v1/time with the identity's token and record the outcome."""
        token = await self.get_valid_access_token(person_name)
        logger.info(f"Testing connection to: {token.api_server}/v1/time")
        try:
            data = await self.client.get_server_time(token.access_token, token.api_server)
        except ProviderHTTPError as e:
            if e.status == 401:
                error = TokenError(f"Unauthorized access for {person_name}. Token may be invalid.",
                                   code=ErrorCode.TOKEN_INVALID)
                self.invalidate(person_name)
            else:
                error = ProviderAPIError(f"Questrade connection test failed for {person_name}: {e}",
                                         upstream_status=e.status)
            await run_in_threadpool(self.store.record_token_error, person_name, error.message)
            raise error from e

        await run_in_threadpool(self.store.record_success, person_name)
        return ConnectionTestResult(success=True, person_name=person_name, api_server=token.api_server,
                                    server_time=data.get("time"))

    def add_invalidation_listener(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    async def _notify_invalidated(self, person_name: str) -> None:
        for listener in self._listeners:
            try:
                await listener(person_name)
            except Exception as e:
                logger.error(f"Invalidation listener failed for {person_name}: {e}")

    async def deactivate_person(self, person_name: str) -> None:
        """Soft delete: retire all tokens, mark the identity inactive and close its stream."""
        self._revocations[person_name] = self._revocations.get(person_name, 0) + 1
        found = await run_in_threadpool(self.store.deactivate_person, person_name)
        if not found:
            raise IdentityNotFoundError(f"Person {person_name} not found")
        self.invalidate(person_name)
        await self._notify_invalidated(person_name)
        logger.info(f"Tokens deactivated for {person_name}")

    async def delete_person(self, person_name: str) -> None:
        self._revocations[person_name] = self._revocations.get(person_name, 0) + 1
        found = await run_in_threadpool(self.store.delete_person, person_name)
        if not found:
            raise IdentityNotFoundError(f"Person {person_name} not found")
        self.invalidate(person_name)
        await self._notify_invalidated(person_name)
        logger.info(f"Person {person_name} permanently deleted")

    async def select_person(self, preferred: Optional[str] = None) -> str:
        """Pick the identity to act as: the caller's choice, else the oldest healthy one."""
        if preferred:
            return preferred
        person = await run_in_threadpool(self.store.first_available_person)
        if not person:
            raise IdentityNotFoundError("No active person with a valid token available")
        return person["person_name"]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "cachedTokens": len(self.cache),
            "refreshesInFlight": len(self._refreshes),
            "refreshCount": self.refresh_count,
        }
