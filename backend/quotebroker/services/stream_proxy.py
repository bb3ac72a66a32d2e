"""
Questrade WebSocket Proxy

Multiplexes browser WebSocket clients onto one upstream Questrade quote
stream per identity. The upstream session subscribes to the union of its
clients' symbol IDs; each quote frame is forwarded only to the clients whose
own subscription contains that symbolId, tagged with the ticker they asked
for. A session lives while it has subscribers and is closed when the last one
leaves, when the upstream goes away, when it stays silent past the idle
timeout, or when the identity's credentials are revoked.

Client protocol (JSON text frames):
    in:  {type: subscribe, symbols: [...], identity|personName}, {type: unsubscribe}, {type: ping}
    out: connected, authenticated, quote, error, disconnected, pong
"""
import asyncio
import enum
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urlsplit

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from quotebroker.config import settings
from quotebroker.services.errors import (
    ErrorCode,
    ProviderAPIError,
    QuoteBrokerError,
    SymbolNotFoundError,
    UpstreamDisconnected,
    UpstreamHandshakeTimeout,
)
from quotebroker.services.number_utils import safe_number
from quotebroker.services.questrade_client import normalize_api_server
from quotebroker.services.symbol_resolver import SymbolResolver
from quotebroker.services.token_manager import TokenManager

logger = logging.getLogger(__name__)

Connector = Callable[[str], Awaitable[Any]]


class ClientState(str, enum.Enum):
    CONNECTED = "connected"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    ERROR = "error"
    CLOSED = "closed"


@dataclass
class StreamClient:
    client_id: str
    websocket: Any
    state: ClientState = ClientState.CONNECTED
    person_name: Optional[str] = None
    symbol_ids: Dict[int, str] = field(default_factory=dict)
    connected_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class StreamSession:
    person_name: str
    upstream: Any
    url: str
    authenticated: bool = False
    subscribed_ids: Set[int] = field(default_factory=set)
    clients: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=datetime.utcnow)
    last_activity: datetime = field(default_factory=datetime.utcnow)
    reader: Optional[asyncio.Task] = None
    closed: bool = False


def build_stream_url(api_server: str, symbol_ids: Iterable[int], stream_port: Optional[int] = None) -> str:
    """wss URL for the quote stream on the identity's API server, on the stream port when known."""
    parts = urlsplit(normalize_api_server(api_server))
    scheme = "ws" if parts.scheme == "http" else "wss"
    port = stream_port or parts.port
    netloc = f"{parts.hostname}:{port}" if port else parts.hostname
    ids = ",".join(str(i) for i in symbol_ids)
    return f"{scheme}://{netloc}/v1/markets/quotes/{ids}"


def _default_connector(url: str):
    return websockets.connect(url, ping_interval=20, ping_timeout=20)


class StreamProxy:
    def __init__(self, token_manager: TokenManager, resolver: SymbolResolver,
                 connector: Optional[Connector] = None,
                 handshake_timeout: Optional[float] = None,
                 idle_timeout: Optional[float] = -1):
        self.token_manager = token_manager
        self.resolver = resolver
        self._connector = connector or _default_connector
        self.handshake_timeout = handshake_timeout or settings.UPSTREAM_HANDSHAKE_TIMEOUT_SECONDS
        # -1 means "use the configured value"; None disables the idle timeout
        self.idle_timeout = settings.STREAM_IDLE_TIMEOUT_SECONDS if idle_timeout == -1 else idle_timeout
        self.clients: Dict[str, StreamClient] = {}
        self.sessions: Dict[str, StreamSession] = {}
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self.sessions_opened = 0
        token_manager.add_invalidation_listener(self.close_identity)

    # ---- client side ------------------------------------------------

    async def _send(self, client: StreamClient, message: Dict[str, Any]) -> None:
        if client.state == ClientState.CLOSED:
            return
        try:
            await client.websocket.send_json(message)
        except Exception as e:
            # The client's own disconnect handler cleans up
            logger.debug(f"[Proxy] Could not send to {client.client_id}: {e}")

    async def _send_error(self, client: StreamClient, error: QuoteBrokerError) -> None:
        await self._send(client, {
            "type": "error",
            "error": error.message,
            "errorCode": error.code.value,
            "tokenRelated": error.token_related,
        })

    async def connect(self, websocket) -> str:
        client_id = f"client_{uuid.uuid4().hex[:12]}"
        client = StreamClient(client_id=client_id, websocket=websocket)
        self.clients[client_id] = client
        logger.info(f"[Proxy] New client connected: {client_id}")
        await self._send(client, {
            "type": "connected",
            "clientId": client_id,
            "message": "Connected to Questrade WebSocket Proxy",
        })
        return client_id

    async def handle_message(self, client_id: str, data: Any) -> None:
        client = self.clients.get(client_id)
        if client is None:
            return
        if not isinstance(data, dict):
            await self._send(client, {"type": "error", "error": "Invalid message format"})
            return

        message_type = data.get("type")
        if message_type == "subscribe":
            symbols = data.get("symbols") or []
            if isinstance(symbols, str):
                symbols = [symbols]
            await self.subscribe(client_id, symbols, data.get("identity") or data.get("personName"))
        elif message_type == "unsubscribe":
            await self.unsubscribe(client_id)
        elif message_type == "ping":
            await self._send(client, {"type": "pong"})
        else:
            logger.warning(f"[Proxy] Unknown message type from {client_id}: {message_type}")
            await self._send(client, {"type": "error", "error": f"Unknown message type: {message_type}"})

    async def subscribe(self, client_id: str, symbols: List[str], person_name: Optional[str] = None) -> None:
        client = self.clients.get(client_id)
        if client is None:
            return

        client.state = ClientState.SUBSCRIBING
        try:
            person_name = await self.token_manager.select_person(person_name)
            lookups = await self.resolver.lookup_symbols(symbols, person_name)
            symbol_ids = {lookup.symbol_id: ticker for ticker, lookup in lookups.items() if lookup.found}
            if not symbol_ids:
                raise SymbolNotFoundError("No valid symbol IDs found")

            if client.person_name and client.person_name != person_name:
                await self._release(client)
            client.person_name = person_name
            client.symbol_ids = symbol_ids

            await self._attach(client)
        except QuoteBrokerError as e:
            logger.error(f"[Proxy] Failed to subscribe {client_id}: {e.code.value}: {e.message}")
            # Clients in ERROR hold no upstream subscription
            await self._release(client)
            client.symbol_ids = {}
            client.state = ClientState.ERROR
            await self._send_error(client, e)
            return

        client.state = ClientState.STREAMING
        unresolved = [ticker for ticker, lookup in lookups.items() if not lookup.found]
        await self._send(client, {
            "type": "authenticated",
            "message": "Successfully connected to Questrade",
            "symbols": sorted(symbol_ids.values()),
            "unresolved": unresolved,
        })

    async def unsubscribe(self, client_id: str) -> None:
        client = self.clients.get(client_id)
        if client is None:
            return
        await self._release(client)
        client.symbol_ids = {}
        client.state = ClientState.CONNECTED

    async def disconnect(self, client_id: str) -> None:
        client = self.clients.pop(client_id, None)
        if client is None:
            return
        client.state = ClientState.CLOSED
        await self._release(client)
        logger.info(f"[Proxy] Client {client_id} removed")

    # ---- upstream sessions ------------------------------------------

    def _lock_for(self, person_name: str) -> asyncio.Lock:
        lock = self._session_locks.get(person_name)
        if lock is None:
            lock = self._session_locks[person_name] = asyncio.Lock()
        return lock

    async def _attach(self, client: StreamClient) -> StreamSession:
        person_name = client.person_name
        async with self._lock_for(person_name):
            session = self.sessions.get(person_name)
            if session is None or session.closed:
                session = await self._open_session(person_name, list(client.symbol_ids))
                self.sessions[person_name] = session
            session.clients.add(client.client_id)
            await self._sync_subscription(session)
            return session

    async def _release(self, client: StreamClient) -> None:
        person_name = client.person_name
        if not person_name:
            return
        async with self._lock_for(person_name):
            session = self.sessions.get(person_name)
            if session is None or client.client_id not in session.clients:
                return
            session.clients.discard(client.client_id)
            if not session.clients:
                logger.info(f"[Proxy] Last subscriber left, closing upstream for {person_name}")
                await self._teardown(session)
                return
            try:
                await self._sync_subscription(session)
            except QuoteBrokerError as e:
                logger.warning(f"[Proxy] Could not shrink subscription for {person_name}: {e.message}")

    async def _open_session(self, person_name: str, symbol_ids: List[int]) -> StreamSession:
        token = await self.token_manager.get_valid_access_token(person_name)
        stream_port = await self.resolver.get_stream_port(person_name, symbol_ids)
        url = build_stream_url(token.api_server, symbol_ids, stream_port)
        logger.info(f"[Proxy] Connecting to Questrade stream for {person_name}: {url}")

        try:
            upstream = await asyncio.wait_for(self._connector(url), timeout=self.handshake_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamHandshakeTimeout(f"Timed out connecting to Questrade stream for {person_name}") from e
        except (OSError, WebSocketException) as e:
            raise UpstreamDisconnected(f"Could not connect to Questrade stream: {e}") from e

        try:
            await upstream.send(token.access_token)
            await asyncio.wait_for(self._await_authenticated(upstream), timeout=self.handshake_timeout)
        except asyncio.TimeoutError as e:
            await self._close_quietly(upstream)
            raise UpstreamHandshakeTimeout(
                f"Questrade stream did not authenticate {person_name} within {self.handshake_timeout}s"
            ) from e
        except ConnectionClosed as e:
            raise UpstreamDisconnected(f"Questrade stream closed during authentication: {e}") from e
        except QuoteBrokerError:
            await self._close_quietly(upstream)
            raise

        session = StreamSession(person_name=person_name, upstream=upstream, url=url, authenticated=True)
        session.reader = asyncio.ensure_future(self._read_loop(session))
        self.sessions_opened += 1
        logger.info(f"[Proxy] Questrade authenticated stream for {person_name}")
        return session

    async def _await_authenticated(self, upstream) -> None:
        while True:
            data = self._parse(await upstream.recv())
            if data is None:
                continue
            if data.get("success") is True:
                return
            if data.get("error"):
                raise ProviderAPIError(f"Questrade stream rejected authentication: {data['error']}")

    async def _sync_subscription(self, session: StreamSession) -> None:
        """Send a streaming frame when the union of client IDs changed."""
        wanted: Set[int] = set()
        for client_id in session.clients:
            client = self.clients.get(client_id)
            if client:
                wanted.update(client.symbol_ids)
        if not wanted or wanted == session.subscribed_ids:
            return
        try:
            await session.upstream.send(json.dumps({"mode": "streaming", "ids": sorted(wanted)}))
        except ConnectionClosed as e:
            await self._teardown(session)
            raise UpstreamDisconnected(f"Questrade stream closed: {e}") from e
        session.subscribed_ids = wanted
        logger.info(f"[Proxy] Subscribed {session.person_name} stream to {len(wanted)} symbols")

    @staticmethod
    def _parse(raw) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("[Proxy] Failed to parse Questrade message")
            return None
        return data if isinstance(data, dict) else None

    async def _read_loop(self, session: StreamSession) -> None:
        try:
            while not session.closed:
                try:
                    if self.idle_timeout:
                        raw = await asyncio.wait_for(session.upstream.recv(), timeout=self.idle_timeout)
                    else:
                        raw = await session.upstream.recv()
                except asyncio.TimeoutError:
                    logger.info(f"[Proxy] Stream for {session.person_name} idle, closing")
                    await self._teardown(session, {"type": "disconnected", "reason": "Stream idle timeout"})
                    return
                session.last_activity = datetime.utcnow()
                await self._dispatch(session, raw)
        except ConnectionClosed as e:
            logger.info(f"[Proxy] Questrade WebSocket closed for {session.person_name}: {e}")
            await self._teardown(
                session, {"type": "disconnected", "reason": "Questrade connection closed"}, ClientState.ERROR
            )
        except (OSError, WebSocketException) as e:
            logger.error(f"[Proxy] Questrade WebSocket error for {session.person_name}: {e}")
            await self._teardown(session, {
                "type": "error",
                "error": "Questrade connection error",
                "errorCode": ErrorCode.UPSTREAM_DISCONNECTED.value,
            }, ClientState.ERROR)

    async def _dispatch(self, session: StreamSession, raw) -> None:
        data = self._parse(raw)
        if data is None or data.get("success") is True:
            return

        subscribers = [self.clients[c] for c in list(session.clients) if c in self.clients]

        if data.get("error"):
            logger.error(f"[Proxy] Questrade error on {session.person_name} stream: {data['error']}")
            for client in subscribers:
                client.state = ClientState.ERROR
                await self._send(client, {"type": "error", "error": data["error"]})
            return

        if isinstance(data.get("quotes"), list):
            quotes = data["quotes"]
        elif "symbolId" in data:
            quotes = [data]
        else:
            return

        for quote in quotes:
            if not isinstance(quote, dict):
                continue
            symbol_id = int(safe_number(quote.get("symbolId")))
            for client in subscribers:
                ticker = client.symbol_ids.get(symbol_id)
                if ticker is not None and client.state == ClientState.STREAMING:
                    await self._send(client, {"type": "quote", "symbol": ticker, "data": quote})

    async def _teardown(self, session: StreamSession, message: Optional[Dict[str, Any]] = None,
                        client_state: Optional[ClientState] = None) -> None:
        if session.closed:
            return
        session.closed = True
        if self.sessions.get(session.person_name) is session:
            del self.sessions[session.person_name]

        reader = session.reader
        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()

        await self._close_quietly(session.upstream)

        for client_id in list(session.clients):
            client = self.clients.get(client_id)
            if client is None:
                continue
            if client_state is not None:
                client.state = client_state
            if message is not None:
                await self._send(client, message)
        session.clients.clear()
        logger.info(f"[Proxy] Upstream session for {session.person_name} closed")

    @staticmethod
    async def _close_quietly(upstream) -> None:
        try:
            await upstream.close()
        except (OSError, WebSocketException) as e:
            logger.debug(f"[Proxy] Error closing upstream: {e}")

    async def close_identity(self, person_name: str) -> None:
        """Close the identity's upstream session (its tokens were revoked)."""
        session = self.sessions.get(person_name)
        if session is None:
            return
        await self._teardown(
            session,
            {"type": "disconnected", "reason": "Credentials for this identity were revoked"},
            ClientState.ERROR,
        )

    async def close_all(self) -> None:
        for session in list(self.sessions.values()):
            await self._teardown(session, {"type": "disconnected", "reason": "Server shutting down"})

    def get_stats(self) -> Dict[str, Any]:
        return {
            "totalClients": len(self.clients),
            "authenticatedClients": sum(1 for c in self.clients.values() if c.state == ClientState.STREAMING),
            "upstreamSessions": len(self.sessions),
            "sessionsOpened": self.sessions_opened,
            "clients": [
                {
                    "id": c.client_id,
                    "state": c.state.value,
                    "symbolCount": len(c.symbol_ids),
                    "personName": c.person_name,
                }
                for c in self.clients.values()
            ],
            "sessions": [
                {
                    "personName": s.person_name,
                    "clientCount": len(s.clients),
                    "symbolCount": len(s.subscribed_ids),
                    "createdAt": s.created_at.isoformat(),
                    "lastActivity": s.last_activity.isoformat(),
                }
                for s in self.sessions.values()
            ],
        }
