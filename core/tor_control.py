"""
Control channel provider for a running tor, built on stem.
"""
import logging
import queue
import socket
from urllib.parse import urlparse

import stem
import stem.connection
from stem.control import Controller, EventType, State

from config import LOCAL_HOST, PUBLISH_TIMEOUT
from .exceptions import (
    AuthenticationError, ControlChannelClosed, ControlConnectError, ListenerCreationError,
)
from .transport import ListenerConfig

logger = logging.getLogger(__name__)

# stem logs raw control traffic at its TRACE level
STEM_TRACE = 5


class OnionListener:
    """A local listening socket published as an onion service."""

    def __init__(self, controller: Controller, sock: socket.socket, service_id: str, port: int):
        self._controller = controller
        self._sock = sock
        self.service_id = service_id
        self.port = port

    def bound_address(self) -> str:
        return f"{self.service_id}.onion:{self.port}"

    def fileno(self) -> int:
        return self._sock.fileno()

    def close(self):
        try:
            self._controller.remove_ephemeral_hidden_service(self.service_id)
        except stem.ControllerError as e:
            logger.debug("Unable to remove onion service: %s", e)
        self._sock.close()


class TorControlConnection:
    """Adapts a stem Controller to the control connection contract."""

    def __init__(self, controller: Controller):
        self.controller = controller
        self._events: queue.Queue = queue.Queue()
        controller.add_status_listener(self._on_status)

    def _on_status(self, controller, state, timestamp):
        self._events.put(state)

    def _on_event(self, event):
        self._events.put(event)

    def authenticate(self, credential: str):
        try:
            self.controller.authenticate(password=credential or None)
        except (stem.connection.AuthenticationFailure, stem.SocketError) as e:
            raise AuthenticationError("Authentication failed", e)
        # Gives next_event() something to wait on besides the close
        self.controller.add_event_listener(self._on_event, EventType.STATUS_GENERAL)

    def create_listener(self, config: ListenerConfig) -> OnionListener:
        if config.use_supplied_key:
            key_type, key_content = config.key_type, config.key_content
        else:
            key_type, key_content = 'NEW', 'ED25519-V3'

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((LOCAL_HOST, 0))
            sock.listen(socket.SOMAXCONN)
            local_port = sock.getsockname()[1]
            response = self.controller.create_ephemeral_hidden_service(
                {config.port: f"{LOCAL_HOST}:{local_port}"},
                key_type=key_type,
                key_content=key_content,
                discard_key=not config.retain_key,
                await_publication=config.await_propagation,
                timeout=PUBLISH_TIMEOUT,
            )
        except (OSError, stem.ControllerError, stem.Timeout) as e:
            sock.close()
            raise ListenerCreationError("Error occurred while creating an onion service", e)

        logger.debug("Onion service %s forwards to %s:%d", response.service_id, LOCAL_HOST, local_port)
        return OnionListener(self.controller, sock, response.service_id, config.port)

    def next_event(self):
        if not self.controller.is_alive():
            raise ControlChannelClosed("control connection is closed")
        event = self._events.get()
        if event is State.CLOSED:
            raise ControlChannelClosed("control connection closed by tor")
        return event

    def close(self):
        self.controller.close()
        # Wake up a monitor blocked in next_event()
        self._events.put(State.CLOSED)


class TorControlProvider:
    """Connects to tor's control port or control socket."""

    def connect(self, endpoint: str, debug: bool = False) -> TorControlConnection:
        """
        Open a control connection.

        Args:
            endpoint: ``tcp://host:port`` or ``unix:///path/to/socket``
            debug: trace control traffic to the log
        """
        logging.getLogger('stem').setLevel(STEM_TRACE if debug else logging.WARNING)

        url = urlparse(endpoint)
        try:
            if url.scheme == 'tcp':
                controller = Controller.from_port(address=url.hostname or LOCAL_HOST,
                                                  port=url.port or 9051)
            elif url.scheme == 'unix':
                controller = Controller.from_socket_file(path=url.path)
            else:
                raise ControlConnectError(f"Unsupported control endpoint: {endpoint}")
        except stem.SocketError as e:
            raise ControlConnectError("Failed to connect to control socket", e)

        logger.info("Connected to tor control at %s", endpoint)
        return TorControlConnection(controller)
