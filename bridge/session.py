from typing import Any, Dict, List, Optional

import websockets.exceptions
from websockets.protocol import State

from utils.logging import get_logger

from . import protocol
from .base_adapter import BaseStreamAdapter, StreamEventSink

logger = get_logger(__name__)


class Session:
    """
    State of one downstream connection: the authentication flag and at most one
    upstream stream adapter, which the session owns and tears down.
    """

    def __init__(self, websocket, session_id: Optional[int] = None):
        self.websocket = websocket
        self.id = session_id if session_id is not None else id(websocket)
        self.authenticated = False
        self.rejected = False
        self.stream: Optional[BaseStreamAdapter] = None
        # Bumped whenever the stream is replaced or dropped; sinks of older
        # generations stop forwarding
        self.generation = 0

    @property
    def is_open(self) -> bool:
        return self.websocket.state is State.OPEN

    async def send(self, message: Dict[str, Any]) -> bool:
        """
        Write an envelope to the downstream socket

        Returns:
            bool: False when the socket was already closed and the write was skipped
        """
        if not self.is_open:
            logger.debug(f"Session {self.id}: socket closed, dropping {message.get('type')} message")
            return False
        try:
            await self.websocket.send(protocol.encode(message))
            return True
        except websockets.exceptions.ConnectionClosed:
            logger.debug(f"Session {self.id}: socket closed while sending {message.get('type')} message")
            return False

    def new_sink(self) -> "SessionEventSink":
        """Start a new stream generation and return the sink bound to it"""
        self.generation += 1
        return SessionEventSink(self, self.generation)

    def attach_stream(self, adapter: BaseStreamAdapter):
        self.stream = adapter

    def close_stream(self) -> Optional[Dict[str, Any]]:
        """
        Disconnect and drop the current adapter, if any. Never raises; a failed
        disconnect is logged and discarded.
        """
        adapter, self.stream = self.stream, None
        self.generation += 1
        if adapter is None:
            return None

        try:
            result = adapter.disconnect()
        except Exception as e:
            result = {'status': 'error', 'message': str(e)}

        if result.get('status') != 'success':
            logger.warning(f"Session {self.id}: error disconnecting stream: {result.get('message')}")
        return result


class SessionEventSink(StreamEventSink):
    """
    Forwards one adapter's events to its session's socket as JSON envelopes.

    Events from an adapter the session has since replaced or dropped are
    discarded, so a late callback never writes into a newer stream's output.
    """

    def __init__(self, session: Session, generation: int):
        self.session = session
        self.generation = generation

    @property
    def is_current(self) -> bool:
        return self.session.generation == self.generation

    async def _forward(self, message: Dict[str, Any]):
        if not self.is_current:
            logger.debug(f"Session {self.session.id}: dropping {message['type']} from superseded stream")
            return
        await self.session.send(message)

    async def on_connected(self, instruments: List[int]) -> None:
        await self._forward(protocol.connected(instruments))

    async def on_ticks(self, ticks: List[Dict[str, Any]]) -> None:
        await self._forward(protocol.ticks(ticks))

    async def on_disconnected(self, message: Optional[str] = None) -> None:
        await self._forward(protocol.disconnected(message))

    async def on_error(self, message: str) -> None:
        await self._forward(protocol.error(message))

    async def on_reconnecting(self, retries: int, interval: float) -> None:
        await self._forward(protocol.reconnecting(retries, interval))

    async def on_noreconnect(self) -> None:
        await self._forward(protocol.noreconnect())

    async def on_order_update(self, data: Any) -> None:
        await self._forward(protocol.order_update(data))
