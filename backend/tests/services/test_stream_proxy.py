import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed

from quotebroker.services.stream_proxy import ClientState, StreamProxy, build_stream_url


class FakeUpstream:
    def __init__(self, authenticate=True):
        self.sent = []
        self.incoming = asyncio.Queue()
        self.closed = False
        if authenticate:
            self.push({"success": True})

    def push(self, data):
        self.incoming.put_nowait(data if isinstance(data, Exception) else json.dumps(data))

    async def send(self, message):
        self.sent.append(message)

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


class FakeClientSocket:
    def __init__(self):
        self.messages = []

    async def send_json(self, message):
        self.messages.append(message)

    def of_type(self, message_type):
        return [m for m in self.messages if m.get("type") == message_type]


async def eventually(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def upstreams():
    return []


@pytest.fixture
def proxy(token_manager, resolver, upstreams):
    async def connector(url):
        upstream = FakeUpstream()
        upstream.url = url
        upstreams.append(upstream)
        return upstream

    proxy = StreamProxy(token_manager, resolver, connector=connector, handshake_timeout=0.2, idle_timeout=None)
    yield proxy


def test_build_stream_url_uses_stream_port():
    url = build_stream_url("https://api01.iq.questrade.com/", [8049, 27426], 34567)
    assert url == "wss://api01.iq.questrade.com:34567/v1/markets/quotes/8049,27426"
    assert build_stream_url("api01.iq.questrade.com", [1]) == "wss://api01.iq.questrade.com/v1/markets/quotes/1"


async def test_clients_share_one_upstream_and_get_only_their_symbols(proxy, upstreams, seeded_person):
    ws1, ws2 = FakeClientSocket(), FakeClientSocket()
    c1 = await proxy.connect(ws1)
    c2 = await proxy.connect(ws2)
    assert ws1.of_type("connected")[0]["clientId"] == c1

    await proxy.handle_message(c1, {"type": "subscribe", "symbols": ["AAPL"]})
    await proxy.handle_message(c2, {"type": "subscribe", "symbols": ["AAPL", "MSFT"], "identity": seeded_person})

    assert len(upstreams) == 1
    upstream = upstreams[0]
    assert upstream.url.startswith("wss://api01.iq.questrade.com:34567/v1/markets/quotes/")
    assert upstream.sent[0] == "access-1"
    assert json.loads(upstream.sent[-1]) == {"mode": "streaming", "ids": [8049, 27426]}
    assert ws1.of_type("authenticated")[0]["symbols"] == ["AAPL"]

    upstream.push({"quotes": [
        {"symbolId": 8049, "lastTradePrice": 101.5},
        {"symbolId": 27426, "lastTradePrice": 404.0},
    ]})
    await eventually(lambda: len(ws2.of_type("quote")) == 2)

    assert [m["symbol"] for m in ws1.of_type("quote")] == ["AAPL"]
    assert sorted(m["symbol"] for m in ws2.of_type("quote")) == ["AAPL", "MSFT"]
    assert ws1.of_type("quote")[0]["data"]["lastTradePrice"] == 101.5

    await proxy.disconnect(c1)
    assert not upstream.closed
    await proxy.disconnect(c2)
    assert upstream.closed
    assert proxy.get_stats()["upstreamSessions"] == 0


async def test_subscription_shrinks_when_a_client_leaves(proxy, upstreams, seeded_person):
    ws1, ws2 = FakeClientSocket(), FakeClientSocket()
    c1 = await proxy.connect(ws1)
    c2 = await proxy.connect(ws2)
    await proxy.subscribe(c1, ["AAPL"])
    await proxy.subscribe(c2, ["MSFT"])

    await proxy.unsubscribe(c2)

    assert json.loads(upstreams[0].sent[-1]) == {"mode": "streaming", "ids": [8049]}
    assert proxy.clients[c2].state == ClientState.CONNECTED
    await proxy.close_all()


async def test_failed_resubscribe_releases_client(proxy, upstreams, seeded_person):
    ws1, ws2 = FakeClientSocket(), FakeClientSocket()
    c1 = await proxy.connect(ws1)
    c2 = await proxy.connect(ws2)
    await proxy.subscribe(c1, ["AAPL"])
    await proxy.subscribe(c2, ["MSFT"])

    await proxy.subscribe(c2, ["ZZZZ"])

    assert ws2.of_type("error")[-1]["errorCode"] == "SYMBOL_NOT_FOUND"
    assert proxy.clients[c2].state == ClientState.ERROR
    assert proxy.clients[c2].symbol_ids == {}
    assert json.loads(upstreams[0].sent[-1]) == {"mode": "streaming", "ids": [8049]}

    await proxy.disconnect(c1)
    assert upstreams[0].closed


async def test_handshake_timeout_is_reported_to_client(token_manager, resolver, seeded_person):
    silent = FakeUpstream(authenticate=False)

    async def connector(url):
        return silent

    proxy = StreamProxy(token_manager, resolver, connector=connector, handshake_timeout=0.05, idle_timeout=None)
    ws = FakeClientSocket()
    client_id = await proxy.connect(ws)

    await proxy.subscribe(client_id, ["AAPL"])

    error = ws.of_type("error")[0]
    assert error["errorCode"] == "UPSTREAM_HANDSHAKE_TIMEOUT"
    assert error["tokenRelated"] is False
    assert silent.closed
    assert proxy.clients[client_id].state == ClientState.ERROR
    assert proxy.sessions == {}


async def test_upstream_close_notifies_clients(proxy, upstreams, seeded_person):
    ws = FakeClientSocket()
    client_id = await proxy.connect(ws)
    await proxy.subscribe(client_id, ["AAPL"])

    upstreams[0].push(ConnectionClosed(None, None))
    await eventually(lambda: ws.of_type("disconnected"))

    assert proxy.clients[client_id].state == ClientState.ERROR
    assert proxy.sessions == {}


async def test_revoked_identity_closes_stream(proxy, upstreams, token_manager, seeded_person):
    ws = FakeClientSocket()
    client_id = await proxy.connect(ws)
    await proxy.subscribe(client_id, ["AAPL"])

    await token_manager.deactivate_person(seeded_person)

    assert upstreams[0].closed
    assert ws.of_type("disconnected")[0]["reason"] == "Credentials for this identity were revoked"
    assert proxy.clients[client_id].state == ClientState.ERROR


async def test_idle_upstream_is_closed(token_manager, resolver, upstreams, seeded_person):
    async def connector(url):
        upstream = FakeUpstream()
        upstreams.append(upstream)
        return upstream

    proxy = StreamProxy(token_manager, resolver, connector=connector, handshake_timeout=0.2, idle_timeout=0.05)
    ws = FakeClientSocket()
    client_id = await proxy.connect(ws)
    await proxy.subscribe(client_id, ["AAPL"])

    await eventually(lambda: ws.of_type("disconnected"))

    assert ws.of_type("disconnected")[0]["reason"] == "Stream idle timeout"
    assert upstreams[0].closed


async def test_unknown_symbols_and_messages(proxy, seeded_person):
    ws = FakeClientSocket()
    client_id = await proxy.connect(ws)

    await proxy.handle_message(client_id, {"type": "subscribe", "symbols": ["ZZZZ"]})
    assert ws.of_type("error")[-1]["errorCode"] == "SYMBOL_NOT_FOUND"

    await proxy.handle_message(client_id, {"type": "ping"})
    assert ws.messages[-1] == {"type": "pong"}

    await proxy.handle_message(client_id, {"type": "dance"})
    assert ws.messages[-1]["error"] == "Unknown message type: dance"

    await proxy.handle_message(client_id, None)
    assert ws.messages[-1]["error"] == "Invalid message format"


async def test_subscribe_reports_unresolved_tickers(proxy, seeded_person):
    ws = FakeClientSocket()
    client_id = await proxy.connect(ws)

    await proxy.subscribe(client_id, ["AAPL", "ZZZZ"])

    authenticated = ws.of_type("authenticated")[0]
    assert authenticated["symbols"] == ["AAPL"]
    assert authenticated["unresolved"] == ["ZZZZ"]
    await proxy.close_all()
