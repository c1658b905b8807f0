"""
Zerodha WebSocket streaming module for the bridge.

This module provides the Kite ticker client and the stream adapter that
relays its events to a single downstream session.
"""

from .zerodha_adapter import ZerodhaStreamAdapter
from .zerodha_websocket import ZerodhaWebSocket

__all__ = ['ZerodhaStreamAdapter', 'ZerodhaWebSocket']
