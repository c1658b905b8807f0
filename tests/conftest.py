"""
Pytest configuration and fixtures for the bridge test suite.
"""
import asyncio
import json
import os
import sys

import pytest
import websockets
from websockets.protocol import State

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ.setdefault("LOG_COLORS", "False")

from bridge.base_adapter import StreamEventSink  # noqa: E402
from bridge.config import BridgeConfig  # noqa: E402
from bridge.server import RelayServer  # noqa: E402
from broker.zerodha.streaming.zerodha_adapter import ZerodhaStreamAdapter  # noqa: E402


class FakeTickerClient:
    """Stand-in for ZerodhaWebSocket that lets tests fire upstream events by hand"""

    def __init__(self, api_key, access_token, **options):
        self.api_key = api_key
        self.access_token = access_token
        self.options = options
        self.connected = False
        self.started = False
        self.stopped = False
        self.requests = []

        self.on_connect = None
        self.on_ticks = None
        self.on_close = None
        self.on_error = None
        self.on_reconnect = None
        self.on_noreconnect = None
        self.on_order_update = None

    def connect(self):
        self.started = True
        return True

    def stop(self):
        self.stopped = True
        self.connected = False

    async def subscribe(self, tokens):
        self.requests.append(("subscribe", list(tokens)))
        return self.connected

    async def set_mode(self, mode, tokens):
        self.requests.append(("mode", mode, list(tokens)))
        return self.connected

    async def unsubscribe(self, tokens):
        self.requests.append(("unsubscribe", list(tokens)))
        return self.connected

    async def fire_connect(self):
        self.connected = True
        await self.on_connect()


class TickerClientRegistry:
    """Creates FakeTickerClients and remembers them in creation order"""

    def __init__(self):
        self.clients = []

    def create(self, api_key, access_token, **options):
        client = FakeTickerClient(api_key, access_token, **options)
        self.clients.append(client)
        return client

    @property
    def latest(self):
        return self.clients[-1]


class RecordingSink(StreamEventSink):
    """Sink that records every event as a (name, args) tuple"""

    def __init__(self):
        self.events = []

    async def on_connected(self, instruments):
        self.events.append(("connected", instruments))

    async def on_ticks(self, ticks):
        self.events.append(("ticks", ticks))

    async def on_disconnected(self, message=None):
        self.events.append(("disconnected", message))

    async def on_error(self, message):
        self.events.append(("error", message))

    async def on_reconnecting(self, retries, interval):
        self.events.append(("reconnecting", retries, interval))

    async def on_noreconnect(self):
        self.events.append(("noreconnect",))

    async def on_order_update(self, data):
        self.events.append(("order_update", data))


class FakeDownstreamSocket:
    """Minimal downstream connection for Session unit tests"""

    def __init__(self, state=State.OPEN):
        self.state = state
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self, code=1000, reason=""):
        self.state = State.CLOSED


async def wait_until(predicate, timeout=2.0, interval=0.01):
    """Poll predicate until it is truthy or fail after timeout seconds"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def recv_json(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


@pytest.fixture
def ticker_clients():
    return TickerClientRegistry()


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
async def make_relay(ticker_clients):
    """Start RelayServers on ephemeral ports backed by fake ticker clients"""
    servers = []

    def adapter_factory(api_key, token, instruments, mode, sink, **options):
        return ZerodhaStreamAdapter(
            api_key, token, instruments, mode=mode, sink=sink,
            client_factory=ticker_clients.create, **options
        )

    async def _make(secret=""):
        server = RelayServer(
            BridgeConfig(host="127.0.0.1", port=0, secret=secret),
            adapter_factory=adapter_factory
        )
        await server.start()
        servers.append(server)
        return server

    yield _make

    for server in servers:
        await server.stop()


@pytest.fixture
async def relay(make_relay):
    return await make_relay()


@pytest.fixture
async def connect_client():
    """Open downstream websocket clients against a relay, closing them afterwards"""
    clients = []

    async def _connect(server):
        ws = await websockets.connect(f"ws://127.0.0.1:{server.port}")
        clients.append(ws)
        return ws

    yield _connect

    for ws in clients:
        await ws.close()
