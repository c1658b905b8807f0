import importlib
from typing import Dict, List, Optional, Type

from utils.logging import get_logger

from .base_adapter import BaseStreamAdapter, StreamEventSink

logger = get_logger(__name__)

# Registry of all supported broker adapters
BROKER_ADAPTERS: Dict[str, Type[BaseStreamAdapter]] = {}

DEFAULT_BROKER = "zerodha"


def register_adapter(broker_name: str, adapter_class: Type[BaseStreamAdapter]) -> None:
    """
    Register a stream adapter class for a specific broker

    Args:
        broker_name: Name of the broker
        adapter_class: Class that implements the BaseStreamAdapter interface
    """
    BROKER_ADAPTERS[broker_name.lower()] = adapter_class


def get_adapter_class(broker_name: str) -> Type[BaseStreamAdapter]:
    """
    Resolve the adapter class for a broker, importing it on first use

    Raises:
        ValueError: If the broker is not supported
    """
    broker_name = broker_name.lower()

    if broker_name in BROKER_ADAPTERS:
        return BROKER_ADAPTERS[broker_name]

    module_name = f"broker.{broker_name}.streaming.{broker_name}_adapter"
    class_name = f"{broker_name.capitalize()}StreamAdapter"

    try:
        module = importlib.import_module(module_name)
        adapter_class = getattr(module, class_name)
    except (ImportError, AttributeError) as e:
        logger.error(f"Failed to load adapter for broker {broker_name}: {e}")
        raise ValueError(f"Unsupported broker: {broker_name}. No adapter available.") from e

    register_adapter(broker_name, adapter_class)
    return adapter_class


def create_stream_adapter(api_key: str, access_token: str, instruments: List[int],
                          mode: str, sink: StreamEventSink,
                          broker_name: Optional[str] = None, **client_options) -> BaseStreamAdapter:
    """
    Create an instance of the appropriate stream adapter

    Args:
        api_key: Upstream API key supplied by the client
        access_token: Upstream access token supplied by the client
        instruments: Instrument ids to subscribe once connected
        mode: Subscription depth (ltp, quote or full)
        sink: Receiver of the adapter's events
        broker_name: Broker to use, defaults to zerodha
        client_options: Upstream client settings passed through to the adapter

    Returns:
        BaseStreamAdapter: A new, not yet connected adapter
    """
    adapter_class = get_adapter_class(broker_name or DEFAULT_BROKER)
    logger.debug(f"Creating {adapter_class.__name__} for {len(instruments)} instrument(s)")
    return adapter_class(api_key, access_token, instruments, mode=mode, sink=sink, **client_options)
