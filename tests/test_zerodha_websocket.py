"""
Tests for the Kite ticker client: packet parsing, text messages, requests and
the reconnect policy against local websocket servers.
"""
import asyncio
import json
import socket
import struct

import pytest
import websockets
import websockets.exceptions

from broker.zerodha.streaming import zerodha_websocket
from broker.zerodha.streaming.zerodha_websocket import ZerodhaWebSocket

NSE_TOKEN = 408065          # segment 1 (NSE)
CDS_TOKEN = (1234 << 8) | 3
INDEX_TOKEN = 256265        # segment 9 (indices)


def frame(*packets):
    """Build a binary ticker frame from raw packets"""
    data = struct.pack(">H", len(packets))
    for packet in packets:
        data += struct.pack(">H", len(packet)) + packet
    return data


def ltp_packet(token, price):
    return struct.pack(">II", token, price)


def quote_packet(token, ltp=150000, qty=5, avg=149800, volume=1200, buy=300, sell=400,
                 open_=149000, high=151000, low=148000, close=149500):
    return struct.pack(">11I", token, ltp, qty, avg, volume, buy, sell, open_, high, low, close)


def full_packet(token):
    packet = quote_packet(token)
    packet += struct.pack(">5I", 1700000000, 42, 50, 40, 1700000001)
    for level in range(10):
        packet += struct.pack(">IIHH", 10 + level, 150000 + level * 5, level + 1, 0)
    return packet


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class FakeUpstreamSocket:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(json.loads(message))


@pytest.fixture
def client():
    return ZerodhaWebSocket("api_key", "access_token")


class TestPacketParsing:

    def test_ltp_packet(self, client):
        ticks = client._parse_binary(frame(ltp_packet(NSE_TOKEN, 150025)))
        assert ticks == [{"instrument_token": NSE_TOKEN, "last_price": 1500.25}]

    def test_quote_packet(self, client):
        tick = client._parse_binary(frame(quote_packet(NSE_TOKEN)))[0]

        assert tick == {
            "instrument_token": NSE_TOKEN,
            "last_price": 1500.0,
            "last_traded_quantity": 5,
            "average_traded_price": 1498.0,
            "volume_traded": 1200,
            "ohlc": {"open": 1490.0, "high": 1510.0, "low": 1480.0, "close": 1495.0},
        }

    def test_full_packet(self, client):
        tick = client._parse_binary(frame(full_packet(NSE_TOKEN)))[0]

        assert tick["last_price"] == 1500.0
        assert tick["last_trade_time"] == 1700000000
        assert tick["oi"] == 42
        assert tick["exchange_timestamp"] == 1700000001
        assert "depth" not in tick

    def test_index_packets(self, client):
        quote = struct.pack(">7I", INDEX_TOKEN, 2000000, 2010000, 1990000, 1995000, 1998000, 0)
        full = quote + struct.pack(">I", 1700000002)

        index_quote, index_full = client._parse_binary(frame(quote, full))

        assert index_quote == {
            "instrument_token": INDEX_TOKEN,
            "last_price": 20000.0,
            "ohlc": {"open": 19950.0, "high": 20100.0, "low": 19900.0, "close": 19980.0},
        }
        assert index_full["exchange_timestamp"] == 1700000002

    def test_currency_divisor(self, client):
        tick = client._parse_binary(frame(ltp_packet(CDS_TOKEN, 832500000)))[0]
        assert tick["last_price"] == pytest.approx(83.25)

    def test_truncated_frame_keeps_complete_packets(self, client):
        data = frame(ltp_packet(NSE_TOKEN, 100), ltp_packet(NSE_TOKEN, 200))[:-3]
        assert [t["last_price"] for t in client._parse_binary(data)] == [1.0]

    def test_unknown_packet_length_is_skipped(self, client):
        assert client._parse_binary(frame(b"\x00" * 12)) == []


class TestMessageHandling:

    @pytest.mark.asyncio
    async def test_heartbeat_is_not_a_tick(self, client):
        received = []

        async def on_ticks(ticks):
            received.append(ticks)

        client.on_ticks = on_ticks
        await client._process_message(b"\x00")

        assert received == []

    @pytest.mark.asyncio
    async def test_binary_ticks_dispatched_as_one_batch(self, client):
        received = []

        async def on_ticks(ticks):
            received.append(ticks)

        client.on_ticks = on_ticks
        await client._process_message(frame(ltp_packet(NSE_TOKEN, 100), ltp_packet(NSE_TOKEN, 200)))

        assert len(received) == 1
        assert [t["last_price"] for t in received[0]] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_order_update_and_error_messages(self, client):
        events = []

        async def on_order_update(data):
            events.append(("order", data))

        async def on_error(code, reason):
            events.append(("error", reason))

        client.on_order_update = on_order_update
        client.on_error = on_error

        await client._process_message(json.dumps({"type": "order", "data": {"order_id": "1", "status": "OPEN"}}))
        await client._process_message(json.dumps({"type": "error", "data": "Invalid token"}))
        await client._process_message(json.dumps({"type": "message", "data": "hello"}))
        await client._process_message("not json")

        assert events == [("order", {"order_id": "1", "status": "OPEN"}), ("error", "Invalid token")]

    @pytest.mark.asyncio
    async def test_callback_failure_does_not_propagate(self, client):
        async def on_ticks(ticks):
            raise ValueError("consumer bug")

        client.on_ticks = on_ticks
        await client._process_message(frame(ltp_packet(NSE_TOKEN, 100)))


class TestRequests:

    @pytest.mark.asyncio
    async def test_subscribe_mode_unsubscribe_messages(self, client):
        upstream = FakeUpstreamSocket()
        client.websocket = upstream
        client.connected = True

        assert await client.subscribe([NSE_TOKEN, "256265"])
        assert await client.set_mode("full", [NSE_TOKEN])
        assert await client.unsubscribe([INDEX_TOKEN])

        assert upstream.sent == [
            {"a": "subscribe", "v": [NSE_TOKEN, INDEX_TOKEN]},
            {"a": "mode", "v": ["full", [NSE_TOKEN]]},
            {"a": "unsubscribe", "v": [INDEX_TOKEN]},
        ]

    @pytest.mark.asyncio
    async def test_requests_fail_when_not_connected(self, client):
        assert await client.subscribe([NSE_TOKEN]) is False
        assert await client.unsubscribe([NSE_TOKEN]) is False

    def test_stop_is_safe_before_connect(self, client):
        client.stop()
        client.stop()
        assert client.running is False

    def test_url_carries_credentials(self, client):
        assert client.ws_url == "wss://ws.kite.trade?api_key=api_key&access_token=access_token"


class TestConnectionLoop:

    @pytest.mark.asyncio
    async def test_connect_receive_and_subscribe(self):
        received_requests = []
        request_paths = []

        async def upstream(connection):
            request_paths.append(connection.request.path)
            await connection.send(frame(ltp_packet(NSE_TOKEN, 150025)))
            async for message in connection:
                received_requests.append(json.loads(message))

        async with websockets.serve(upstream, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            client = ZerodhaWebSocket("k", "t", root_uri=f"ws://127.0.0.1:{port}", reconnect=False)
            got_ticks = asyncio.Event()
            ticks_seen = []

            async def on_connect():
                await client.subscribe([NSE_TOKEN])

            async def on_ticks(ticks):
                ticks_seen.extend(ticks)
                got_ticks.set()

            client.on_connect = on_connect
            client.on_ticks = on_ticks
            client.connect()

            try:
                await asyncio.wait_for(got_ticks.wait(), 5)
                for _ in range(100):
                    if received_requests:
                        break
                    await asyncio.sleep(0.01)
            finally:
                client.stop()

        assert ticks_seen[0]["last_price"] == 1500.25
        assert received_requests == [{"a": "subscribe", "v": [NSE_TOKEN]}]
        assert "api_key=k" in request_paths[0]
        assert "access_token=t" in request_paths[0]

    @pytest.mark.asyncio
    async def test_server_close_reports_code_and_reason(self):
        async def upstream(connection):
            await connection.close(4000, "session expired")

        async with websockets.serve(upstream, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            client = ZerodhaWebSocket("k", "t", root_uri=f"ws://127.0.0.1:{port}", reconnect=False)
            closed = asyncio.Event()
            close_args = []

            async def on_close(code, reason):
                close_args.append((code, reason))
                closed.set()

            client.on_close = on_close
            client.connect()
            await asyncio.wait_for(closed.wait(), 5)

        assert close_args == [(4000, "session expired")]
        await asyncio.sleep(0)
        assert client.running is False

    @pytest.mark.asyncio
    async def test_reconnect_until_exhausted(self):
        client = ZerodhaWebSocket(
            "k", "t",
            root_uri=f"ws://127.0.0.1:{free_port()}",
            reconnect_max_tries=2,
            reconnect_max_delay=0.01,
            connect_timeout=2
        )
        events = []
        gave_up = asyncio.Event()

        async def on_error(code, reason):
            events.append("error")

        async def on_reconnect(attempt, delay):
            events.append(("reconnect", attempt, delay))

        async def on_noreconnect():
            events.append("noreconnect")
            gave_up.set()

        client.on_error = on_error
        client.on_reconnect = on_reconnect
        client.on_noreconnect = on_noreconnect
        client.connect()

        await asyncio.wait_for(gave_up.wait(), 5)

        assert events == [
            "error", ("reconnect", 1, 0.01),
            "error", ("reconnect", 2, 0.01),
            "error", "noreconnect",
        ]

    @pytest.mark.asyncio
    async def test_unexpected_connect_failure_is_reported_and_retried(self, monkeypatch):
        def broken_connect(*args, **kwargs):
            raise websockets.exceptions.ProtocolError("unexpected frame")

        monkeypatch.setattr(zerodha_websocket.websockets, "connect", broken_connect)

        client = ZerodhaWebSocket("k", "t", reconnect_max_tries=1, reconnect_max_delay=0.01)
        events = []
        gave_up = asyncio.Event()

        async def on_error(code, reason):
            events.append(("error", reason))

        async def on_reconnect(attempt, delay):
            events.append(("reconnect", attempt))

        async def on_noreconnect():
            events.append(("noreconnect",))
            gave_up.set()

        client.on_error = on_error
        client.on_reconnect = on_reconnect
        client.on_noreconnect = on_noreconnect
        client.connect()

        await asyncio.wait_for(gave_up.wait(), 5)

        assert events == [
            ("error", "unexpected frame"),
            ("reconnect", 1),
            ("error", "unexpected frame"),
            ("noreconnect",),
        ]
        assert client.running is False
