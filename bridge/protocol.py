"""
JSON envelopes exchanged with downstream clients.

Inbound:  {"type": "subscribe"|"unsubscribe"|"ping", "secret"?, "api_key"?,
           "token"?, "instruments"?: [int], "mode"?: "ltp"|"quote"|"full"}
Outbound: pong, connected, ticks, disconnected, error, reconnecting,
          noreconnect and order_update envelopes built by the helpers below.
"""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

MSG_SUBSCRIBE = "subscribe"
MSG_UNSUBSCRIBE = "unsubscribe"
MSG_PING = "ping"

DEFAULT_MODE = "full"
VALID_MODES = ("ltp", "quote", "full")

UNAUTHORIZED = "Unauthorized"
MISSING_SUBSCRIBE_FIELDS = "Missing api_key, token, or instruments"


@dataclass
class ClientMessage:
    type: Optional[str]
    secret: Optional[str] = None
    api_key: Optional[str] = None
    token: Optional[str] = None
    instruments: List[int] = field(default_factory=list)
    mode: str = DEFAULT_MODE


def _coerce_instruments(value: Any) -> List[int]:
    """Instrument ids as ints; anything that is not a list of integers counts as empty"""
    if not isinstance(value, list):
        return []
    instruments = []
    for item in value:
        if isinstance(item, bool):
            return []
        if isinstance(item, int):
            instruments.append(item)
        elif isinstance(item, str) and item.strip().isdecimal():
            try:
                instruments.append(int(item))
            except ValueError:
                return []
        else:
            return []
    return instruments


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def parse_client_message(raw: Union[str, bytes]) -> Optional[ClientMessage]:
    """
    Parse an inbound frame

    Args:
        raw: Text or binary WebSocket frame

    Returns:
        ClientMessage, or None when the frame is not valid JSON. JSON that is not
        an object yields a message with no fields set, so it still goes through
        the auth gate.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None

    if not isinstance(data, dict):
        return ClientMessage(type=None)

    mode = data.get("mode")
    if mode not in VALID_MODES:
        mode = DEFAULT_MODE

    return ClientMessage(
        type=_as_str(data.get("type")),
        secret=_as_str(data.get("secret")),
        api_key=_as_str(data.get("api_key")),
        token=_as_str(data.get("token")),
        instruments=_coerce_instruments(data.get("instruments")),
        mode=mode,
    )


def pong() -> Dict[str, Any]:
    return {"type": "pong"}


def connected(instruments: List[int]) -> Dict[str, Any]:
    return {"type": "connected", "instruments": list(instruments)}


def ticks(data: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "ticks", "data": data}


def disconnected(message: Optional[str] = None) -> Dict[str, Any]:
    envelope = {"type": "disconnected"}
    if message is not None:
        envelope["message"] = message
    return envelope


def error(message: Optional[str]) -> Dict[str, Any]:
    return {"type": "error", "error": message if message is not None else "Unknown error"}


def reconnecting(retries: int, interval: float) -> Dict[str, Any]:
    return {"type": "reconnecting", "retries": retries, "interval": interval}


def noreconnect() -> Dict[str, Any]:
    return {"type": "noreconnect"}


def order_update(data: Any) -> Dict[str, Any]:
    return {"type": "order_update", "data": data}


def encode(envelope: Dict[str, Any]) -> str:
    """Serialize an outbound envelope; values JSON cannot represent are sent as strings"""
    return json.dumps(envelope, default=str)
