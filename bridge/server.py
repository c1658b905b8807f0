import asyncio as aio
import hmac
import signal
import sys
import threading
from typing import Callable, Dict, Optional

import websockets
import websockets.exceptions

from utils.logging import get_logger, log_startup_banner

from . import protocol
from .broker_factory import create_stream_adapter
from .config import BridgeConfig, ConfigError
from .health import make_health_handler
from .port_check import is_port_in_use
from .session import Session

logger = get_logger("bridge")

POLICY_VIOLATION = 1008
GOING_AWAY = 1001
CLIENT_CLOSE_TIMEOUT = 2.0


class RelayServer:
    """
    WebSocket relay that authenticates downstream clients, opens one upstream
    stream per client on request and forwards that stream's events back to the
    same client only. Plain HTTP on the same port serves the health check.
    """

    def __init__(self, config: BridgeConfig, adapter_factory: Optional[Callable] = None):
        """
        Initialize the relay

        Args:
            config: Listen address, shared secret and upstream client settings
            adapter_factory: Builds stream adapters; called as
                factory(api_key, token, instruments, mode, sink, **config.upstream)
        """
        self.config = config
        self.adapter_factory = adapter_factory or create_stream_adapter
        self.sessions: Dict[object, Session] = {}
        self.server = None
        self._stop_event: Optional[aio.Event] = None

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    @property
    def port(self) -> int:
        """Port actually bound, useful when configured with port 0"""
        if not self.server:
            return self.config.port
        return next(iter(self.server.sockets)).getsockname()[1]

    async def start(self):
        """Bind the listening socket and start accepting connections"""
        host, port = self.config.host, self.config.port

        if port and is_port_in_use(host, port):
            raise RuntimeError(
                f"Port {port} is already in use on {host}. "
                f"Stop the other process or set PORT to a free port."
            )

        self.server = await websockets.serve(
            self.handle_client,
            host,
            port,
            process_request=make_health_handler(lambda: self.session_count)
        )

        log_startup_banner(logger, "Kite Bridge", f"ws://{host}:{self.port}")
        if self.config.open_access:
            logger.warning("No BRIDGE_SECRET set - open access")
        else:
            logger.info("Secret auth enabled")

    async def serve_forever(self):
        """Run until SIGINT/SIGTERM or request_stop(), then shut down gracefully"""
        await self.start()
        self._stop_event = aio.Event()
        self._install_signal_handlers()

        try:
            await self._stop_event.wait()
        finally:
            self._remove_signal_handlers()
            await self.stop()

    def request_stop(self):
        if self._stop_event:
            self._stop_event.set()

    def _on_signal(self, sig):
        logger.info(f"{signal.Signals(sig).name} - shutting down")
        self.request_stop()

    def _install_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            logger.info("Running in a non-main thread. Signal handlers will not be used.")
            return

        loop = aio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._on_signal, sig)
            logger.debug("Signal handlers registered")
        except (NotImplementedError, RuntimeError) as e:
            logger.info(f"Signal handlers not registered: {e}")

    def _remove_signal_handlers(self):
        if threading.current_thread() is not threading.main_thread():
            return

        loop = aio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError) as e:
                logger.debug(f"Could not remove {signal.Signals(sig).name} handler: {e}")

    async def stop(self):
        """
        Shut down: disconnect every session's stream and close every downstream
        socket, then close the listener and wait until it is fully closed.
        Upstream close handshakes are not awaited.
        """
        logger.info("Stopping bridge...")

        close_tasks = []
        for session in list(self.sessions.values()):
            session.close_stream()
            close_tasks.append(session.websocket.close(GOING_AWAY, "Server shutting down"))

        if close_tasks:
            try:
                await aio.wait_for(
                    aio.gather(*close_tasks, return_exceptions=True),
                    timeout=CLIENT_CLOSE_TIMEOUT
                )
            except aio.TimeoutError:
                logger.warning("Timeout waiting for client connections to close")

        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
            logger.info("Bridge stopped and port released")

    async def handle_client(self, websocket):
        """
        Handle a downstream connection for its whole lifetime

        Args:
            websocket: The WebSocket connection
        """
        session = self.on_connect(websocket)

        try:
            async for message in websocket:
                if session.rejected:
                    break
                try:
                    await self.on_message(session, message)
                except websockets.exceptions.ConnectionClosed:
                    raise
                except Exception as e:
                    logger.exception(f"Error processing message from session {session.id}: {e}")
        except websockets.exceptions.ConnectionClosedOK:
            logger.debug(f"Session {session.id} closed while processing a message")
        except websockets.exceptions.ConnectionClosedError as e:
            self.on_socket_error(session, e)
        finally:
            self.on_close(session)

    def on_connect(self, websocket) -> Session:
        session = Session(websocket)
        self.sessions[websocket] = session
        logger.info(f"Client connected (total: {self.session_count})")
        return session

    def on_close(self, session: Session):
        session.close_stream()
        self.sessions.pop(session.websocket, None)
        logger.info(f"Client disconnected (total: {self.session_count})")

    def on_socket_error(self, session: Session, err: Exception):
        logger.error(f"Session {session.id} ws error: {err}")

    def _check_secret(self, secret: Optional[str]) -> bool:
        if self.config.open_access:
            return True
        if secret is None:
            return False
        # JSON strings may carry lone surrogates, which strict utf-8 refuses to encode
        return hmac.compare_digest(
            secret.encode("utf-8", "surrogatepass"),
            self.config.secret.encode("utf-8", "surrogatepass")
        )

    async def on_message(self, session: Session, raw):
        """
        Process one inbound frame

        Args:
            session: Session of the sending socket
            raw: The frame as received
        """
        message = protocol.parse_client_message(raw)
        if message is None:
            logger.debug(f"Dropping malformed message from session {session.id}")
            return

        # First message must carry the secret when one is configured
        if not session.authenticated:
            if not self._check_secret(message.secret):
                logger.warning(f"Session {session.id} failed authentication, closing")
                session.rejected = True
                await session.send(protocol.error(protocol.UNAUTHORIZED))
                await session.websocket.close(POLICY_VIOLATION, protocol.UNAUTHORIZED)
                return
            session.authenticated = True

        if message.type == protocol.MSG_PING:
            await session.send(protocol.pong())
        elif message.type == protocol.MSG_SUBSCRIBE:
            await self.subscribe(session, message)
        elif message.type == protocol.MSG_UNSUBSCRIBE:
            await self.unsubscribe(session, message)
        else:
            logger.debug(f"Session {session.id} sent unknown message type: {message.type}")

    async def subscribe(self, session: Session, message: protocol.ClientMessage):
        """Replace the session's stream with a new one for the given credentials"""
        if not message.api_key or not message.token or not message.instruments:
            await session.send(protocol.error(protocol.MISSING_SUBSCRIBE_FIELDS))
            return

        if session.stream is not None:
            logger.info(f"Session {session.id}: tearing down existing stream")
            session.close_stream()

        sink = session.new_sink()
        adapter = self.adapter_factory(
            message.api_key,
            message.token,
            message.instruments,
            message.mode,
            sink,
            **self.config.upstream
        )
        session.attach_stream(adapter)

        result = adapter.connect()
        if result.get('status') != 'success':
            logger.error(f"Session {session.id}: failed to open stream: {result.get('message')}")
            session.close_stream()
            await session.send(protocol.error(result.get('message')))
            return

        logger.info(f"Session {session.id}: stream opening for {len(message.instruments)} instrument(s), mode {message.mode}")

    async def unsubscribe(self, session: Session, message: protocol.ClientMessage):
        if session.stream is None or not message.instruments:
            return

        result = await session.stream.unsubscribe(message.instruments)
        if result.get('status') != 'success':
            logger.warning(f"Session {session.id}: unsubscribe failed: {result.get('message')}")
            return

        if not session.stream.instruments:
            logger.info(f"Session {session.id}: no instruments left, closing stream")
            session.close_stream()


async def main() -> int:
    """Main entry point for running the bridge"""
    try:
        config = BridgeConfig.from_env()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    server = RelayServer(config)

    try:
        await server.serve_forever()
    except (OSError, RuntimeError) as e:
        logger.error(f"Failed to start bridge: {e}")
        return 1

    return 0


def run():
    sys.exit(aio.run(main()))


if __name__ == "__main__":
    run()
