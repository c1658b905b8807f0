import json
from http import HTTPStatus
from typing import Callable, Optional

from websockets.http11 import Request, Response

from utils.logging import get_logger

logger = get_logger(__name__)

HEALTH_PATH = "/health"


def _is_websocket_upgrade(request: Request) -> bool:
    return "websocket" in request.headers.get("Upgrade", "").lower()


def make_health_handler(session_count: Callable[[], int]):
    """
    Build a process_request hook that answers plain HTTP on the WebSocket port.

    WebSocket upgrades on any path continue to the handshake. Otherwise
    GET /health returns {"status": "ok", "sessions": <count>} and any other
    path gets a 404.

    Args:
        session_count: Returns the number of live downstream sessions
    """

    def process_request(connection, request: Request) -> Optional[Response]:
        if _is_websocket_upgrade(request):
            return None

        path = request.path.split("?", 1)[0]
        if path == HEALTH_PATH:
            body = json.dumps({"status": "ok", "sessions": session_count()})
            response = connection.respond(HTTPStatus.OK, body)
            del response.headers["Content-Type"]
            response.headers["Content-Type"] = "application/json"
            return response

        logger.debug(f"404 for plain HTTP request to {path}")
        return connection.respond(HTTPStatus.NOT_FOUND, "Not Found\n")

    return process_request
