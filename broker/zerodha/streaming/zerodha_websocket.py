"""
Asyncio client for Zerodha's Kite ticker streaming API.

Runs as a task on the caller's event loop (no thread of its own) and implements:
- Connection with the Kite version header and a bounded open timeout
- Binary tick packet parsing (LTP, quote, full, index quote/full)
- Order postbacks and error messages pushed as text frames
- Automatic reconnection with exponential backoff and an attempt cap
"""
import asyncio
import json
import struct
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websockets
import websockets.exceptions

from utils.logging import get_logger

logger = get_logger(__name__)

Callback = Optional[Callable[..., Awaitable[None]]]


class ZerodhaWebSocket:
    """
    WebSocket client for Zerodha's market data streaming API.

    Events are reported through optional coroutine callbacks:

        on_connect()                  handshake completed (also after every reconnect)
        on_ticks(ticks)               list of parsed tick dicts
        on_close(code, reason)        upstream closed the connection
        on_error(code, reason)        connection failure or error message from Kite
        on_reconnect(attempt, delay)  a reconnect attempt is scheduled
        on_noreconnect()              reconnect attempts exhausted, client stopped
        on_order_update(data)         order postback pushed on the stream
    """

    ROOT_URI = "wss://ws.kite.trade"
    KITE_VERSION = "3"
    USER_AGENT = "KiteBridge-ZerodhaClient/1.0"

    # Packet lengths per mode
    LTP_PACKET_LENGTH = 8
    INDEX_QUOTE_PACKET_LENGTH = 28
    INDEX_FULL_PACKET_LENGTH = 32
    QUOTE_PACKET_LENGTH = 44
    FULL_PACKET_LENGTH = 184

    # Exchange segments encoded in the low byte of the instrument token
    SEGMENT_CDS = 3
    SEGMENT_BCD = 6

    CONNECT_TIMEOUT = 30
    CLOSE_TIMEOUT = 2
    MAX_MESSAGE_SIZE = 10 * 1024 * 1024

    # Reconnection settings (same defaults as the official library)
    RECONNECT_INITIAL_DELAY = 2
    RECONNECT_MAX_DELAY = 60
    RECONNECT_MAX_TRIES = 50

    def __init__(self, api_key: str, access_token: str, root_uri: Optional[str] = None,
                 reconnect: bool = True, reconnect_max_tries: Optional[int] = None,
                 reconnect_max_delay: Optional[float] = None, connect_timeout: Optional[float] = None):
        """Initialize the Zerodha WebSocket client"""
        self.api_key = api_key
        self.access_token = access_token
        self.root_uri = root_uri or self.ROOT_URI
        self.reconnect = reconnect
        self.reconnect_max_tries = self.RECONNECT_MAX_TRIES if reconnect_max_tries is None else reconnect_max_tries
        self.reconnect_max_delay = self.RECONNECT_MAX_DELAY if reconnect_max_delay is None else reconnect_max_delay
        self.connect_timeout = connect_timeout or self.CONNECT_TIMEOUT
        self.logger = get_logger(__name__)

        self.websocket = None
        self.connected = False
        self.running = False
        self._task: Optional[asyncio.Task] = None

        # Callback handlers
        self.on_connect: Callback = None
        self.on_ticks: Callback = None
        self.on_close: Callback = None
        self.on_error: Callback = None
        self.on_reconnect: Callback = None
        self.on_noreconnect: Callback = None
        self.on_order_update: Callback = None

        query = urlencode({'api_key': self.api_key, 'access_token': self.access_token})
        self.ws_url = f"{self.root_uri}?{query}"

    def connect(self) -> bool:
        """Start the connection loop as a task on the running event loop"""
        if self.running:
            self.logger.debug("WebSocket client already running")
            return True

        self.running = True
        self._task = asyncio.get_running_loop().create_task(self._run_forever())
        return True

    def stop(self):
        """
        Stop the client. Idempotent and safe before connect(); does not wait for
        the close handshake with Kite to finish.
        """
        self.running = False
        self.connected = False
        task, self._task = self._task, None
        if task and not task.done():
            task.cancel()
            self.logger.debug("WebSocket client stop requested")

    def is_connected(self) -> bool:
        """Check if WebSocket is connected"""
        return self.connected and self.websocket is not None

    async def subscribe(self, tokens: List[int]) -> bool:
        """Subscribe to tokens. Kite streams new subscriptions in quote mode until set_mode()"""
        tokens = [int(token) for token in tokens]
        if not await self._send_json({"a": "subscribe", "v": tokens}):
            return False
        self.logger.debug(f"Subscribed to {len(tokens)} tokens")
        return True

    async def set_mode(self, mode: str, tokens: List[int]) -> bool:
        """Set streaming mode for already subscribed tokens"""
        tokens = [int(token) for token in tokens]
        if not await self._send_json({"a": "mode", "v": [mode, tokens]}):
            return False
        self.logger.debug(f"Set mode {mode} for {len(tokens)} tokens")
        return True

    async def unsubscribe(self, tokens: List[int]) -> bool:
        """Unsubscribe from market data for given tokens"""
        tokens = [int(token) for token in tokens]
        if not await self._send_json({"a": "unsubscribe", "v": tokens}):
            return False
        self.logger.debug(f"Unsubscribed from {len(tokens)} tokens")
        return True

    async def _send_json(self, message: Dict) -> bool:
        """Send JSON message to WebSocket"""
        if not self.is_connected():
            self.logger.warning(f"WebSocket not connected, dropping '{message.get('a')}' request")
            return False

        try:
            await self.websocket.send(json.dumps(message))
            return True
        except websockets.exceptions.ConnectionClosed as e:
            self.logger.warning(f"Error sending message, connection closed: {e}")
            self.connected = False
            return False

    async def _dispatch(self, name: str, *args):
        """Invoke a callback; failures are logged and never stop the stream"""
        callback = getattr(self, name)
        if callback is None:
            return
        try:
            await callback(*args)
        except Exception as e:
            self.logger.error(f"Error in {name} callback: {e}")

    def _connection_lost(self):
        self.connected = False
        self.websocket = None

    async def _run_forever(self):
        """Connection loop: connect, pump messages, back off and retry"""
        attempt = 0

        try:
            while self.running:
                try:
                    async with websockets.connect(
                        self.ws_url,
                        additional_headers={'X-Kite-Version': self.KITE_VERSION},
                        user_agent_header=self.USER_AGENT,
                        open_timeout=self.connect_timeout,
                        close_timeout=self.CLOSE_TIMEOUT,
                        max_size=self.MAX_MESSAGE_SIZE,
                        ping_interval=None,  # Kite sends its own heartbeats
                        compression=None
                    ) as websocket:
                        self.websocket = websocket
                        self.connected = True
                        attempt = 0
                        self.logger.info("Kite ticker connected")
                        await self._dispatch('on_connect')

                        try:
                            async for message in websocket:
                                await self._process_message(message)
                            code, reason = websocket.close_code, websocket.close_reason
                        except websockets.exceptions.ConnectionClosedError as e:
                            code = e.rcvd.code if e.rcvd else 1006
                            reason = e.rcvd.reason if e.rcvd else str(e)

                    self._connection_lost()
                    self.logger.info(f"Kite ticker closed: code={code}, reason={reason or 'none'}")
                    if self.running:
                        await self._dispatch('on_close', code, reason)

                except (OSError, asyncio.TimeoutError,
                        websockets.exceptions.InvalidHandshake,
                        websockets.exceptions.InvalidURI) as e:
                    self._connection_lost()
                    error_msg = str(e) or e.__class__.__name__
                    self.logger.error(f"Kite ticker connection failed: {error_msg}")
                    await self._dispatch('on_error', None, error_msg)

                except Exception as e:
                    self._connection_lost()
                    error_msg = str(e) or e.__class__.__name__
                    self.logger.exception(f"Unexpected Kite ticker failure: {error_msg}")
                    await self._dispatch('on_error', None, error_msg)

                if not self.running or not self.reconnect:
                    break

                attempt += 1
                if attempt > self.reconnect_max_tries:
                    self.logger.error(f"Max reconnection attempts ({self.reconnect_max_tries}) reached")
                    await self._dispatch('on_noreconnect')
                    break

                delay = min(self.RECONNECT_INITIAL_DELAY * (2 ** (attempt - 1)), self.reconnect_max_delay)
                self.logger.info(f"Reconnecting in {delay}s (attempt {attempt}/{self.reconnect_max_tries})")
                await self._dispatch('on_reconnect', attempt, delay)
                await asyncio.sleep(delay)
        finally:
            self._connection_lost()
            self.running = False
            self.logger.debug("WebSocket message loop stopped")

    async def _process_message(self, message):
        """Process incoming WebSocket message"""
        if isinstance(message, bytes):
            # Kite heartbeat - 1 byte message to keep connection alive
            if len(message) == 1:
                return

            ticks = self._parse_binary(message)
            if ticks:
                await self._dispatch('on_ticks', ticks)
            return

        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            self.logger.debug(f"Non-JSON text: {message}")
            return

        if not isinstance(data, dict):
            self.logger.debug(f"Unexpected text message: {data}")
            return

        msg_type = data.get('type')
        if msg_type == 'order':
            await self._dispatch('on_order_update', data.get('data'))
        elif msg_type == 'error':
            self.logger.error(f"Kite error message: {data.get('data', '')}")
            await self._dispatch('on_error', None, str(data.get('data', '')))
        else:
            self.logger.debug(f"JSON message: {data}")

    def _split_packets(self, data: bytes) -> List[bytes]:
        """Split a binary frame into packets: 2 byte count, then 2 byte length + payload each"""
        if len(data) < 2:
            return []

        num_packets = struct.unpack('>H', data[0:2])[0]
        packets = []
        offset = 2

        for _ in range(num_packets):
            if offset + 2 > len(data):
                break
            packet_length = struct.unpack('>H', data[offset:offset + 2])[0]
            offset += 2
            if offset + packet_length > len(data):
                break
            packets.append(data[offset:offset + packet_length])
            offset += packet_length

        return packets

    def _parse_binary(self, data: bytes) -> List[Dict[str, Any]]:
        """Parse a binary frame into tick dicts using the Kite packet layout"""
        ticks = []
        for packet in self._split_packets(data):
            tick = self._parse_packet(packet)
            if tick:
                ticks.append(tick)
        return ticks

    def _divisor(self, instrument_token: int) -> float:
        segment = instrument_token & 0xff
        if segment == self.SEGMENT_CDS:
            return 10000000.0
        if segment == self.SEGMENT_BCD:
            return 10000.0
        return 100.0

    def _parse_packet(self, packet: bytes) -> Optional[Dict[str, Any]]:
        """
        Parse an individual packet; the mode is implied by its length. Only the
        fields the bridge forwards are decoded, market depth is skipped.
        """
        length = len(packet)
        if length < self.LTP_PACKET_LENGTH:
            return None

        instrument_token = struct.unpack('>I', packet[0:4])[0]
        divisor = self._divisor(instrument_token)

        if length == self.LTP_PACKET_LENGTH:
            return {
                'instrument_token': instrument_token,
                'last_price': struct.unpack('>I', packet[4:8])[0] / divisor,
            }

        if length in (self.INDEX_QUOTE_PACKET_LENGTH, self.INDEX_FULL_PACKET_LENGTH):
            last_price, high, low, open_, close = [
                f / divisor for f in struct.unpack('>5I', packet[4:24])
            ]
            tick = {
                'instrument_token': instrument_token,
                'last_price': last_price,
                'ohlc': {'open': open_, 'high': high, 'low': low, 'close': close},
            }
            if length == self.INDEX_FULL_PACKET_LENGTH:
                tick['exchange_timestamp'] = struct.unpack('>I', packet[28:32])[0]
            return tick

        if length in (self.QUOTE_PACKET_LENGTH, self.FULL_PACKET_LENGTH):
            (last_price, last_quantity, average_price, volume,
             _buy_quantity, _sell_quantity, open_, high, low, close) = struct.unpack('>10I', packet[4:44])
            tick = {
                'instrument_token': instrument_token,
                'last_price': last_price / divisor,
                'last_traded_quantity': last_quantity,
                'average_traded_price': average_price / divisor,
                'volume_traded': volume,
                'ohlc': {
                    'open': open_ / divisor,
                    'high': high / divisor,
                    'low': low / divisor,
                    'close': close / divisor,
                },
            }

            if length == self.FULL_PACKET_LENGTH:
                last_trade_time, oi, _oi_day_high, _oi_day_low, exchange_timestamp = \
                    struct.unpack('>5I', packet[44:64])
                tick.update({
                    'last_trade_time': last_trade_time,
                    'oi': oi,
                    'exchange_timestamp': exchange_timestamp,
                })
            return tick

        self.logger.debug(f"Ignoring packet of unexpected length {length}")
        return None
