# bridge/__init__.py

from .server import RelayServer, main as bridge_main
from .broker_factory import register_adapter, create_stream_adapter
from .base_adapter import BaseStreamAdapter, StreamEventSink
from .config import BridgeConfig
from .session import Session, SessionEventSink

__all__ = [
    'RelayServer',
    'bridge_main',
    'register_adapter',
    'create_stream_adapter',
    'BaseStreamAdapter',
    'StreamEventSink',
    'BridgeConfig',
    'Session',
    'SessionEventSink',
]
