"""
Zerodha stream adapter for the bridge.

Owns one Kite ticker connection opened with a client's own credentials and
reports its events, already normalized, to the session that requested it.
"""
from typing import Any, Dict, List, Optional

from bridge.base_adapter import BaseStreamAdapter, StreamEventSink

from .zerodha_mapping import ZerodhaModeMapper, normalize_tick
from .zerodha_websocket import ZerodhaWebSocket


class ZerodhaStreamAdapter(BaseStreamAdapter):
    """
    Zerodha-specific implementation of the stream adapter.

    On every upstream connect (the first one and each reconnect) the requested
    instruments are subscribed and their mode set before the sink is told the
    stream is live.
    """

    broker_name = "zerodha"

    def __init__(self, api_key: str, access_token: str, instruments: List[int],
                 mode: str = "full", sink: Optional[StreamEventSink] = None,
                 client_factory=ZerodhaWebSocket, **client_options):
        """
        Initialize the Zerodha stream adapter

        Args:
            client_factory: Ticker client class, replaceable for tests
            client_options: Extra ticker settings (root_uri, reconnect_max_tries,
                reconnect_max_delay, connect_timeout)
        """
        super().__init__(api_key, access_token, instruments, mode=mode, sink=sink)
        self.kite_mode = ZerodhaModeMapper.to_kite_mode(self.mode)
        self.client_factory = client_factory
        self.client_options = client_options
        self.ws_client = None

    def _create_client(self):
        return self.client_factory(
            api_key=self.api_key,
            access_token=self.access_token,
            **self.client_options
        )

    def connect(self) -> Dict[str, Any]:
        """Register ticker callbacks and open the upstream connection"""
        if self.ws_client is not None:
            return self._create_success_response('Already connecting')

        try:
            self.ws_client = self._create_client()

            self.ws_client.on_connect = self._on_connect
            self.ws_client.on_ticks = self._on_ticks
            self.ws_client.on_close = self._on_close
            self.ws_client.on_error = self._on_error
            self.ws_client.on_reconnect = self._on_reconnect
            self.ws_client.on_noreconnect = self._on_noreconnect
            self.ws_client.on_order_update = self._on_order_update

            self.ws_client.connect()
            self.logger.info(f"Zerodha ticker connecting for {len(self.instruments)} instrument(s) in {self.kite_mode} mode")
            return self._create_success_response('Connection started')

        except (RuntimeError, TypeError, ValueError) as e:
            self.ws_client = None
            self.logger.error(f"Error connecting: {e}")
            return self._create_error_response(str(e))

    def disconnect(self) -> Dict[str, Any]:
        """Stop the ticker. Safe before connect() and when already disconnected"""
        try:
            if self.ws_client is not None:
                self.ws_client.stop()
            return self._create_success_response('Disconnected successfully')

        except Exception as e:
            self.logger.error(f"Error disconnecting: {e}")
            return self._create_error_response(str(e))

    async def unsubscribe(self, instruments: List[int]) -> Dict[str, Any]:
        """Unsubscribe instrument ids on the live ticker connection"""
        if self.ws_client is None:
            return self._create_error_response('WebSocket client not initialized')

        if not await self.ws_client.unsubscribe(instruments):
            return self._create_error_response('WebSocket not connected')

        remaining = set(instruments)
        self.instruments = [token for token in self.instruments if token not in remaining]
        self.logger.info(f"Unsubscribed {len(instruments)} instrument(s)")
        return self._create_success_response(f'Unsubscribed {len(instruments)} instrument(s)')

    async def _on_connect(self):
        """Subscribe the requested instruments, then report the stream as live"""
        self.logger.info(f"Zerodha ticker connected - {len(self.instruments)} instrument(s)")
        await self.ws_client.subscribe(self.instruments)
        await self.ws_client.set_mode(self.kite_mode, self.instruments)
        if self.sink:
            await self.sink.on_connected(list(self.instruments))

    async def _on_ticks(self, ticks: List[Dict]):
        if self.sink:
            await self.sink.on_ticks([normalize_tick(tick) for tick in ticks])

    async def _on_close(self, code, reason):
        self.logger.info(f"Zerodha ticker disconnected: {reason or 'unknown'}")
        if self.sink:
            await self.sink.on_disconnected(reason or None)

    async def _on_error(self, code, reason):
        self.logger.error(f"Zerodha ticker error: {reason}")
        if self.sink:
            await self.sink.on_error(reason)

    async def _on_reconnect(self, attempts, interval):
        self.logger.info(f"Reconnecting... attempt {attempts}, interval {interval}s")
        if self.sink:
            await self.sink.on_reconnecting(attempts, interval)

    async def _on_noreconnect(self):
        self.logger.error("Zerodha ticker gave up reconnecting")
        if self.sink:
            await self.sink.on_noreconnect()

    async def _on_order_update(self, data):
        if self.sink:
            await self.sink.on_order_update(data)
