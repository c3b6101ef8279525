"""Network listener: one bound socket plus its dispatch loop.

A Listener runs a threaded HTTP server in either plain or TLS transport
mode. Both modes share the same request handler class and settings, so
the two listeners always expose the same routes.
"""

import logging
import ssl
import threading
import time
from dataclasses import dataclass
from http.server import ThreadingHTTPServer
from pathlib import Path
from typing import Callable, Optional, Union

from dualserve.handlers import HandlerSettings, RequestHandler
from dualserve.tls import TLSConfig

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.25
DEFAULT_HANDSHAKE_TIMEOUT = 10.0


class ListenerError(Exception):
    """Fatal listener error (bind failure, TLS misconfiguration, loop crash)."""

    def __init__(self, listener: str, message: str):
        self.listener = listener
        self.message = message
        super().__init__(f"{listener}: {message}")


@dataclass(frozen=True)
class PlainTransport:
    """Plain TCP transport."""

    scheme = "http"


@dataclass(frozen=True)
class EncryptedTransport:
    """TLS-terminated transport."""

    cert_path: Path
    key_path: Path

    scheme = "https"

    def ssl_context(self) -> ssl.SSLContext:
        return TLSConfig.from_paths(self.cert_path, self.key_path).server_context()


Transport = Union[PlainTransport, EncryptedTransport]


@dataclass(frozen=True)
class CompletionToken:
    """Outcome of Listener.stop().

    drained: every in-flight request finished before the deadline
    in_flight: requests still running when stop returned
    already_closed: the listener was not running when stop was called
    error: unexpected error raised while stopping
    """

    listener: str
    drained: bool
    in_flight: int = 0
    already_closed: bool = False
    error: Optional[BaseException] = None

    @property
    def deadline_expired(self) -> bool:
        return not self.drained and self.error is None


class ListenerServer(ThreadingHTTPServer):
    """ThreadingHTTPServer that counts in-flight requests.

    For TLS the listening socket stays plain; each accepted connection is
    wrapped and handshaken on its own worker thread.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(
        self,
        server_address,
        handler_class,
        name: str,
        settings: HandlerSettings,
        ssl_context: Optional[ssl.SSLContext] = None,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
    ):
        self.name = name
        self.settings = settings
        self.ssl_context = ssl_context
        self.handshake_timeout = handshake_timeout
        self._in_flight = 0
        self._idle = threading.Condition()
        super().__init__(server_address, handler_class)

    @property
    def in_flight(self) -> int:
        with self._idle:
            return self._in_flight

    def process_request(self, request, client_address):
        with self._idle:
            self._in_flight += 1
        try:
            super().process_request(request, client_address)
        except Exception:
            self._request_done()
            raise

    def process_request_thread(self, request, client_address):
        try:
            super().process_request_thread(request, client_address)
        finally:
            self._request_done()

    def _request_done(self):
        with self._idle:
            self._in_flight -= 1
            self._idle.notify_all()

    def finish_request(self, request, client_address):
        if self.ssl_context is None:
            super().finish_request(request, client_address)
            return

        request.settimeout(self.handshake_timeout)
        tls_request = self.ssl_context.wrap_socket(request, server_side=True)
        try:
            super().finish_request(tls_request, client_address)
        finally:
            self.shutdown_request(tls_request)

    def handle_error(self, request, client_address):
        """Log per-connection failures instead of printing a traceback."""
        self.settings.logger.warning(
            "[%s] error handling request from %s", self.name, client_address[0],
            exc_info=True,
        )

    def wait_idle(self, deadline: float) -> bool:
        """Block until no request is in flight or the deadline passes.

        Args:
            deadline: Absolute time.monotonic() value

        Returns:
            True if idle, False if the deadline passed first
        """
        with self._idle:
            while self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._idle.wait(remaining)
            return True


class Listener:
    """One bound address, one transport, one dispatch loop."""

    def __init__(
        self,
        name: str,
        bind: str,
        port: int,
        transport: Transport,
        settings: Optional[HandlerSettings] = None,
        handler_class=RequestHandler,
        on_fatal: Optional[Callable[["Listener", BaseException], None]] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        log: Optional[logging.Logger] = None,
    ):
        """Initialize listener (nothing is bound until start()).

        Args:
            name: Label used in log lines and tokens
            bind: Address to bind to ("" for all interfaces)
            port: Port to listen on (0 lets the OS pick)
            transport: PlainTransport() or EncryptedTransport(cert, key)
            settings: Handler settings shared with the other listener
            handler_class: Request handler class
            on_fatal: Called from the dispatch thread if the loop crashes
            poll_interval: serve_forever poll interval in seconds
            log: Logger to use (default: module logger)
        """
        self.name = name
        self.bind = bind
        self.port = port
        self.transport = transport
        self.settings = settings or HandlerSettings()
        self.handler_class = handler_class
        self.on_fatal = on_fatal
        self.poll_interval = poll_interval
        self.log = log or logger
        self.server: Optional[ListenerServer] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._loop_done = threading.Event()
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self.server is not None and not self._stopping.is_set()

    @property
    def url(self) -> str:
        host = self.bind or "0.0.0.0"
        return f"{self.transport.scheme}://{host}:{self.port}"

    def start(self):
        """Bind the socket and start the dispatch loop.

        Raises:
            ListenerError: If already started, the address cannot be bound,
                or the TLS context cannot be built
        """
        with self._lock:
            if self.server is not None:
                raise ListenerError(self.name, "already started")

            ssl_context = None
            if isinstance(self.transport, EncryptedTransport):
                try:
                    ssl_context = self.transport.ssl_context()
                except (OSError, ssl.SSLError) as e:
                    self.log.error("[%s] TLS setup failed: %s", self.name, e)
                    raise ListenerError(self.name, f"TLS setup failed: {e}") from e

            try:
                server = ListenerServer(
                    (self.bind, self.port),
                    self.handler_class,
                    name=self.name,
                    settings=self.settings,
                    ssl_context=ssl_context,
                )
            except OSError as e:
                self.log.error("[%s] cannot bind %s:%d: %s", self.name, self.bind, self.port, e)
                raise ListenerError(self.name, f"cannot bind {self.bind}:{self.port}: {e}") from e

            self.server = server
            self.port = server.server_address[1]
            self._stopping.clear()
            self._loop_done.clear()
            self._thread = threading.Thread(
                target=self._serve,
                name=f"{self.name}-listener",
                daemon=True,
            )
            self._thread.start()

        self.log.info("[%s] listening on %s", self.name, self.url)

    def _serve(self):
        """Dispatch loop body (runs on the listener thread)."""
        server = self.server
        try:
            server.serve_forever(poll_interval=self.poll_interval)
        except Exception as e:
            self._loop_done.set()
            if self._stopping.is_set():
                self.log.debug("[%s] loop exited during stop: %s", self.name, e)
                return
            self.log.critical("[%s] dispatch loop failed: %s", self.name, e, exc_info=True)
            if self.on_fatal is not None:
                self.on_fatal(self, e)
        finally:
            self._loop_done.set()

    def stop(self, deadline: float) -> CompletionToken:
        """Stop accepting and drain in-flight requests until the deadline.

        Args:
            deadline: Absolute time.monotonic() value shared by all listeners

        Returns:
            CompletionToken describing the outcome
        """
        with self._lock:
            server = self.server
            if server is None or self._stopping.is_set():
                return CompletionToken(listener=self.name, drained=True, already_closed=True)
            self._stopping.set()

        self.log.info("[%s] stopping", self.name)
        try:
            # Ends serve_forever; no accept happens after this returns
            if not self._loop_done.is_set():
                server.shutdown()
            server.server_close()
        except OSError as e:
            self.log.error("[%s] error closing listener: %s", self.name, e)
            return CompletionToken(
                listener=self.name, drained=False,
                in_flight=server.in_flight, error=e,
            )

        drained = server.wait_idle(deadline)
        remaining = server.in_flight
        if drained:
            self.log.info("[%s] stopped", self.name)
        else:
            self.log.debug("[%s] %d request(s) still running at deadline", self.name, remaining)
        return CompletionToken(listener=self.name, drained=drained, in_flight=remaining)
