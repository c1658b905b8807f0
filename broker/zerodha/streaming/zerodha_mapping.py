"""
Zerodha ticker data mapping utilities.

Maps client subscription modes onto Kite ticker modes and reshapes raw ticker
packets into the flat tick records forwarded to downstream clients.
"""
import time
from datetime import datetime
from typing import Any, Dict, Optional


class ZerodhaModeMapper:
    """Maps client subscription modes to Kite ticker modes"""

    MODE_LTP = "ltp"
    MODE_QUOTE = "quote"
    MODE_FULL = "full"

    DEFAULT_MODE = MODE_FULL

    _CLIENT_TO_KITE = {
        'ltp': MODE_LTP,
        'quote': MODE_QUOTE,
        'full': MODE_FULL,
    }

    @classmethod
    def to_kite_mode(cls, mode: Optional[str]) -> str:
        """
        Convert a client mode to a Kite ticker mode.

        Args:
            mode: Client mode (ltp, quote or full); anything else means full

        Returns:
            Kite ticker mode constant
        """
        if not isinstance(mode, str):
            return cls.DEFAULT_MODE
        return cls._CLIENT_TO_KITE.get(mode.lower(), cls.DEFAULT_MODE)


def _to_epoch_ms(value: Any) -> Optional[int]:
    """Convert a datetime or epoch seconds/milliseconds value to epoch milliseconds"""
    if isinstance(value, datetime):
        return int(value.timestamp() * 1000)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    # Kite sends exchange timestamps in seconds
    if value < 10_000_000_000:
        return int(value * 1000)
    return int(value)


def _first_present(tick: Dict, *keys, default=0):
    for key in keys:
        value = tick.get(key)
        if value is not None:
            return value
    return default


def normalize_tick(tick: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a raw ticker packet into the downstream tick shape.

    Both the ticker's native field names (volume_traded, average_traded_price,
    last_traded_quantity) and the short names (volume, average_price,
    last_quantity) are accepted. Absent optional fields become 0; ohlc is only
    present when the packet carried it. timestamp is always epoch milliseconds,
    taken from the exchange timestamp when available and the local clock otherwise.

    Args:
        tick: Raw tick from the upstream client

    Returns:
        dict: Normalized tick
    """
    normalized = {
        'instrument_token': tick.get('instrument_token'),
        'last_price': _first_present(tick, 'last_price', 'last_traded_price'),
        'volume': _first_present(tick, 'volume', 'volume_traded'),
        'oi': _first_present(tick, 'oi', 'open_interest'),
        'average_price': _first_present(tick, 'average_price', 'average_traded_price'),
        'last_quantity': _first_present(tick, 'last_quantity', 'last_traded_quantity'),
    }

    ohlc = tick.get('ohlc')
    if ohlc:
        normalized['ohlc'] = {
            'open': ohlc.get('open', 0),
            'high': ohlc.get('high', 0),
            'low': ohlc.get('low', 0),
            'close': ohlc.get('close', 0),
        }

    timestamp = None
    for key in ('exchange_timestamp', 'timestamp', 'last_trade_time'):
        timestamp = _to_epoch_ms(tick.get(key))
        if timestamp is not None:
            break
    normalized['timestamp'] = timestamp if timestamp is not None else int(time.time() * 1000)

    return normalized
