"""
Publication lifecycle: drives the transport provider from connection to
teardown and hands back the published address exactly once.
"""
import enum
import logging
import os
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, List, Optional

from config import SERVICE_PORT, SETUP_TIMEOUT, PublicationConfig
from server.gateway import GatewayServer, create_app
from .capability import generate_slug
from .content_source import ContentSource, resolve_source
from .exceptions import (
    AuthenticationError, ControlConnectError, ListenerCreationError, OnionizeError,
    PublicationCancelled, SetupTimeoutError, TransportLostError, TransportSetupError,
)
from .identity import ServiceIdentity, derive_identity
from .transport import ControlConnection, ControlProvider, Listener, ListenerConfig

logger = logging.getLogger(__name__)

# How often blocked setup steps look for cancellation
POLL_INTERVAL = 0.1


class State(enum.Enum):
    IDLE = 'idle'
    CONNECTED = 'connected'
    AUTHENTICATED = 'authenticated'
    IDENTITY_READY = 'identity_ready'
    LISTENER_PUBLISHED = 'listener_published'
    SERVING = 'serving'
    TERMINATED = 'terminated'
    FAILED = 'failed'


@dataclass(frozen=True)
class PublicationResult:
    """Either the published address or the error that prevented it."""

    url: Optional[str] = None
    error: Optional[OnionizeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class Publication:
    """
    Handle on one publication.

    ``result`` resolves exactly once. ``stopped`` is set once serving has
    ended for any reason; ``fatal_error`` then tells whether the transport
    was lost.
    """

    def __init__(self):
        self.result: Future = Future()
        self.result.set_running_or_notify_cancel()
        self.stopped = threading.Event()
        self.fatal_error: Optional[TransportLostError] = None
        self._cancelled = threading.Event()
        self._cancel_callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    def resolve(self, result: PublicationResult) -> bool:
        """Deliver the result. Later calls are ignored and return False."""
        with self._lock:
            if self.result.done():
                return False
            self.result.set_result(result)
            return True

    def wait_result(self, timeout: Optional[float] = None) -> PublicationResult:
        return self.result.result(timeout)

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def on_cancel(self, callback: Callable[[], None]):
        self._cancel_callbacks.append(callback)

    def cancel(self):
        """
        Stop the publication at the next suspension point, or stop serving.

        An unresolved result resolves with PublicationCancelled right away.
        """
        with self._lock:
            if self._cancelled.is_set():
                return
            self._cancelled.set()
            if not self.result.done():
                self.result.set_result(PublicationResult(
                    error=PublicationCancelled("Cancelled before the address was reported")))
        logger.info("Publication cancelled")
        for callback in list(self._cancel_callbacks):
            callback()


def fatal_abort(error: TransportLostError):
    """Default supervisor: the service must not outlive its transport."""
    logger.critical("%s", error)
    logging.shutdown()
    os._exit(1)


def _close_quietly(resource):
    if resource is None:
        return
    try:
        resource.close()
    except Exception as e:
        logger.debug("Error while closing %r: %s", resource, e)


class TransportLifecycleController:
    """
    Owns one publication end to end.

    Sequence: resolve the content source and slug, connect, authenticate,
    derive the identity, publish a listener, report the address, serve.
    A background monitor drains control events for as long as the service
    runs; losing the control channel, or the serve loop dying, hands a
    TransportLostError to ``on_fatal`` after resources are released.
    """

    def __init__(self, config: PublicationConfig, provider: Optional[ControlProvider] = None,
                 on_fatal: Callable[[TransportLostError], None] = fatal_abort,
                 setup_timeout: float = SETUP_TIMEOUT):
        if provider is None:
            from .tor_control import TorControlProvider
            provider = TorControlProvider()
        self.config = config
        self.provider = provider
        self.on_fatal = on_fatal
        self.setup_timeout = setup_timeout
        self.state = State.IDLE

        self.slug = ''
        self.source: Optional[ContentSource] = None
        self.identity: Optional[ServiceIdentity] = None
        self.connection: Optional[ControlConnection] = None
        self.listener: Optional[Listener] = None
        self.server: Optional[GatewayServer] = None
        self.monitor_thread: Optional[threading.Thread] = None

        self._release_lock = threading.Lock()
        self._fatal_lock = threading.Lock()
        self._fatal_raised = False
        self._stopping = threading.Event()

    # Entry points

    def start(self) -> Publication:
        """Run the publication in a background thread and return its handle."""
        publication = Publication()
        thread = threading.Thread(target=self.run, args=(publication,),
                                  name='onionize-publication', daemon=True)
        thread.start()
        return publication

    def run(self, publication: Optional[Publication] = None) -> Publication:
        """Run the publication in this thread until serving ends."""
        publication = publication or Publication()
        publication.on_cancel(self._stop)
        try:
            url = self._publish(publication)
        except Exception as e:
            if not isinstance(e, OnionizeError):
                logger.debug("Unexpected error during publication", exc_info=True)
                e = TransportSetupError("Publication failed", e)
            self.state = State.FAILED
            logger.error("Publication failed: %s", e)
            self._release()
            publication.resolve(PublicationResult(error=e))
            publication.stopped.set()
            return publication

        self._serve(publication, url)
        return publication

    # Setup

    def _publish(self, publication: Publication) -> str:
        if self.config.slug:
            self.slug = generate_slug()

        self.source = resolve_source(self.config.path, self.config.archive)
        app = create_app(self.source, self.slug)

        with self._step(ControlConnectError, "Failed to connect to control socket"):
            self.connection = self._blocking(
                publication, 'connect', self.provider.connect,
                self.config.control, self.config.debug)
        self.state = State.CONNECTED

        with self._step(AuthenticationError, "Authentication failed"):
            self._blocking(publication, 'authenticate',
                           self.connection.authenticate, self.config.control_password)
        self.state = State.AUTHENTICATED

        self.identity = derive_identity(self.config.passphrase)
        self.state = State.IDENTITY_READY

        listener_config = self._listener_config(self.identity)
        with self._step(ListenerCreationError, "Error occurred while creating an onion service"):
            self.listener = self._blocking(
                publication, 'create listener',
                self.connection.create_listener, listener_config)
        self.state = State.LISTENER_PUBLISHED

        with self._step(ListenerCreationError, "Cannot serve on the onion service listener"):
            self.server = GatewayServer(app, self.listener)
            bound_address = self.listener.bound_address()
        if publication.cancelled:
            raise PublicationCancelled("Cancelled before the address was reported")
        return self._published_url(bound_address, listener_config.port)

    def _listener_config(self, identity: ServiceIdentity) -> ListenerConfig:
        if identity.derived:
            return ListenerConfig(
                use_supplied_key=True,
                key_type=identity.key_type,
                key_content=identity.key_content(),
                await_propagation=True,
                retain_key=True,
                port=SERVICE_PORT,
            )
        return ListenerConfig(await_propagation=True, retain_key=False, port=SERVICE_PORT)

    def _published_url(self, bound_address: str, port: int) -> str:
        suffix = f":{port}"
        host = bound_address[:-len(suffix)] if bound_address.endswith(suffix) else bound_address
        path = ''
        if self.slug:
            path += self.slug + '/'
        path += self.source.url_suffix
        return f"http://{host}/{path}"

    @contextmanager
    def _step(self, error_cls, message):
        """Wrap provider failures in ``error_cls`` unless already classified."""
        try:
            yield
        except OnionizeError:
            raise
        except Exception as e:
            raise error_cls(message, e) from e

    def _blocking(self, publication: Publication, what: str, fn, *args):
        """
        Run a blocking provider call, bounded by the setup timeout and
        interrupted by cancellation.
        """
        future: Future = Future()

        def target():
            future.set_running_or_notify_cancel()
            try:
                future.set_result(fn(*args))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=target, name=f'onionize-{what}', daemon=True).start()

        deadline = time.monotonic() + self.setup_timeout
        while True:
            if publication.cancelled:
                self._abandon(future)
                raise PublicationCancelled(f"Cancelled during {what}")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._abandon(future)
                raise SetupTimeoutError(f"Timed out after {self.setup_timeout:g}s waiting to {what}")
            try:
                return future.result(timeout=min(remaining, POLL_INTERVAL))
            except FutureTimeout:
                continue

    @staticmethod
    def _abandon(future: Future):
        # Whatever the call produces later belongs to nobody
        def cleanup(f):
            if f.exception() is None:
                _close_quietly(f.result())
        future.add_done_callback(cleanup)

    # Serving

    def _serve(self, publication: Publication, url: str):
        self.monitor_thread = threading.Thread(
            target=self._monitor, args=(publication,), name='onionize-monitor', daemon=True)
        self.monitor_thread.start()

        try:
            # cancel() may have resolved the result since setup finished
            if not publication.resolve(PublicationResult(url=url)):
                logger.info("Cancelled before the address was reported")
                return
            self.state = State.SERVING
            logger.info("Onion service is up")
            self.server.serve_forever()
        except Exception as e:
            if not self._stopping.is_set():
                self._fatal(publication, TransportLostError("Cannot serve HTTP", e))
        finally:
            self._release()
            if self.state is not State.FAILED:
                self.state = State.TERMINATED
            publication.stopped.set()

    def _monitor(self, publication: Publication):
        """Drain control events; any failure means the transport is gone."""
        connection = self.connection
        while not self._stopping.is_set():
            try:
                event = connection.next_event()
            except Exception as e:
                if not self._stopping.is_set():
                    self._fatal(publication, TransportLostError("Lost connection to tor", e))
                return
            logger.debug("Control event: %s", event)

    def _fatal(self, publication: Publication, error: TransportLostError):
        with self._fatal_lock:
            if self._fatal_raised or self._stopping.is_set():
                return
            self._fatal_raised = True
            publication.fatal_error = error
            self.state = State.FAILED
        logger.critical("%s", error)
        self._stop()
        self._release()
        publication.stopped.set()
        self.on_fatal(error)

    # Teardown

    def _stop(self):
        if self._stopping.is_set():
            return
        self._stopping.set()
        if self.server is not None:
            self.server.shutdown()
        elif self.connection is not None:
            # Unblocks the monitor; setup steps notice the cancel on their own
            _close_quietly(self.connection)

    def _release(self):
        """Close listener, control connection and source. Safe to repeat."""
        with self._release_lock:
            self._stopping.set()
            listener, self.listener = self.listener, None
            connection, self.connection = self.connection, None
            source, self.source = self.source, None
            server = self.server
        _close_quietly(server)
        _close_quietly(listener)
        _close_quietly(connection)
        _close_quietly(source)
