from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from utils.logging import get_logger

logger = get_logger(__name__)


class StreamEventSink(ABC):
    """
    Receiver of normalized upstream events for exactly one downstream session.

    Adapters call these coroutines on the relay's event loop, in the order the
    upstream transport produced the events.
    """

    @abstractmethod
    async def on_connected(self, instruments: List[int]) -> None:
        pass

    @abstractmethod
    async def on_ticks(self, ticks: List[Dict[str, Any]]) -> None:
        pass

    @abstractmethod
    async def on_disconnected(self, message: Optional[str] = None) -> None:
        pass

    @abstractmethod
    async def on_error(self, message: str) -> None:
        pass

    @abstractmethod
    async def on_reconnecting(self, retries: int, interval: float) -> None:
        pass

    @abstractmethod
    async def on_noreconnect(self) -> None:
        pass

    @abstractmethod
    async def on_order_update(self, data: Any) -> None:
        pass


class BaseStreamAdapter(ABC):
    """
    Base class for broker-specific upstream stream adapters.

    An adapter owns a single upstream streaming connection opened with one
    credential pair, subscribes the requested instruments once connected and
    reports every upstream event to its StreamEventSink.
    """

    broker_name = None

    def __init__(self, api_key: str, access_token: str, instruments: List[int],
                 mode: str = "full", sink: Optional[StreamEventSink] = None):
        self.api_key = api_key
        self.access_token = access_token
        self.instruments = list(instruments)
        self.mode = mode
        self.sink = sink
        self.logger = get_logger(f"{__name__}.{self.broker_name or 'adapter'}")

    @abstractmethod
    def connect(self) -> Dict[str, Any]:
        """
        Start the upstream connection. Returns immediately; the connected event
        is delivered to the sink once the upstream handshake completes.
        """
        pass

    @abstractmethod
    async def unsubscribe(self, instruments: List[int]) -> Dict[str, Any]:
        """
        Unsubscribe the given instrument ids from the upstream stream

        Args:
            instruments: Instrument ids to drop

        Returns:
            dict: Response with status
        """
        pass

    @abstractmethod
    def disconnect(self) -> Dict[str, Any]:
        """
        Tear down the upstream connection. Must be safe to call at any time,
        including before connect() and more than once.

        Returns:
            dict: Response with status, never raises
        """
        pass

    def _create_success_response(self, message, **kwargs):
        """
        Create a standard success response
        """
        response = {
            'status': 'success',
            'message': message
        }
        response.update(kwargs)
        return response

    def _create_error_response(self, message):
        """
        Create a standard error response
        """
        return {
            'status': 'error',
            'message': message
        }
