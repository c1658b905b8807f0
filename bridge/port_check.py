import socket

from utils.logging import get_logger

logger = get_logger(__name__)


def is_port_in_use(host, port):
    """
    Check if a port is already in use on a specific host

    Args:
        host (str): Hostname to check
        port (int): Port number to check

    Returns:
        bool: True if the port is in use, False otherwise
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    with socket.socket(family, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
            return False
        except OSError:
            logger.info(f"Port {port} is already in use on {host}")
            return True
