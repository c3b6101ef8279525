"""Lifecycle coordinator for the plain and encrypted listeners.

State machine:

    INITIALIZING -> RUNNING -> SHUTTING_DOWN -> TERMINATED

Startup requires every listener to start; any failure aborts the whole
process. Shutdown is triggered once through a ShutdownToken (fired by
SIGINT/SIGTERM or directly by tests), stops all listeners concurrently
against one shared deadline, and waits for every listener's
CompletionToken before returning.
"""

import logging
import signal
import threading
import time
from enum import Enum
from typing import Iterable, Optional, Sequence

from dualserve.config import ServerConfig
from dualserve.handlers import HandlerSettings
from dualserve.listener import (
    CompletionToken,
    EncryptedTransport,
    Listener,
    ListenerError,
    PlainTransport,
)

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class State(Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class ShutdownError(Exception):
    """One or more listeners failed to stop cleanly."""

    def __init__(self, errors: list[tuple[str, BaseException]]):
        self.errors = errors
        details = "; ".join(f"{name}: {err}" for name, err in errors)
        super().__init__(f"shutdown failed: {details}")


class ShutdownToken:
    """One-shot cancellation token.

    The first fire() wins; later calls are reported and ignored.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self.reason: Optional[str] = None

    @property
    def fired(self) -> bool:
        return self._event.is_set()

    def fire(self, reason: str = "requested") -> bool:
        """Fire the token.

        Returns:
            True if this call fired it, False if it was already fired
        """
        with self._lock:
            if self._event.is_set():
                return False
            self.reason = reason
            self._event.set()
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class Coordinator:
    """Owns the listeners and drives startup and coordinated shutdown."""

    def __init__(
        self,
        listeners: Sequence[Listener],
        shutdown_timeout: float,
        token: Optional[ShutdownToken] = None,
        log: Optional[logging.Logger] = None,
    ):
        """Initialize coordinator.

        Args:
            listeners: Listeners to manage (fixed for the process lifetime)
            shutdown_timeout: Seconds allowed for graceful shutdown
            token: Shutdown trigger (a fresh one if None)
            log: Logger to use (default: module logger)
        """
        self.listeners = tuple(listeners)
        self.shutdown_timeout = shutdown_timeout
        self.token = token or ShutdownToken()
        self.log = log or logger
        self.state = State.INITIALIZING
        self.tokens: list[CompletionToken] = []
        self._fatal: Optional[ListenerError] = None
        self._state_lock = threading.Lock()
        self._previous_handlers: dict[int, object] = {}

        for listener in self.listeners:
            listener.on_fatal = self._on_listener_fatal

    @classmethod
    def from_config(
        cls,
        config: ServerConfig,
        log: Optional[logging.Logger] = None,
        token: Optional[ShutdownToken] = None,
    ) -> "Coordinator":
        """Build the plain + encrypted listener pair from configuration."""
        log = log or logger
        settings = HandlerSettings(
            static_dir=config.static_dir,
            upload_dir=config.upload_dir,
            unmatched_status=config.unmatched_status,
            logger=log,
        )
        listeners = [
            Listener(
                "http", config.bind, config.http_port, PlainTransport(),
                settings=settings, log=log,
            ),
            Listener(
                "https", config.bind, config.https_port,
                EncryptedTransport(config.cert_file, config.key_file),
                settings=settings, log=log,
            ),
        ]
        return cls(listeners, config.shutdown_timeout, token=token, log=log)

    def _set_state(self, state: State):
        self.log.debug("coordinator %s -> %s", self.state.value, state.value)
        self.state = state

    def start(self):
        """Start every listener.

        Raises:
            ListenerError: If any listener fails; started ones are closed
        """
        if self.state is not State.INITIALIZING:
            raise RuntimeError(f"cannot start from state {self.state.value}")

        started = []
        for listener in self.listeners:
            try:
                listener.start()
            except ListenerError:
                self.log.error("startup aborted: %s failed to start", listener.name)
                self._stop_all(started, time.monotonic())
                self._set_state(State.TERMINATED)
                raise
            started.append(listener)

        self._set_state(State.RUNNING)

    def install_signal_handlers(self, signals: Iterable[int] = DEFAULT_SIGNALS):
        """Route termination signals to the shutdown token.

        Must be called from the main thread.
        """

        def handle_signal(signum, frame):
            name = signal.Signals(signum).name
            if self.token.fire(name):
                self.log.info("Received %s, shutting down", name)
            else:
                self.log.info("Received %s while shutting down, ignored", name)

        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, handle_signal)

    def restore_signal_handlers(self):
        """Put back the handlers replaced by install_signal_handlers()."""
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def wait(self, poll_interval: float = 0.5):
        """Block until the shutdown token fires."""
        # Short waits keep the main thread responsive to signal handlers
        while not self.token.wait(poll_interval):
            pass

    def _on_listener_fatal(self, listener: Listener, error: BaseException):
        self._fatal = ListenerError(listener.name, f"dispatch loop failed: {error}")
        self._fatal.__cause__ = error
        self.token.fire(f"{listener.name} failed")

    def _stop_all(self, listeners: Sequence[Listener], deadline: float) -> list[CompletionToken]:
        """Stop listeners concurrently and wait for all of them."""
        results: dict[str, CompletionToken] = {}

        def stop_one(listener: Listener):
            try:
                results[listener.name] = listener.stop(deadline)
            except Exception as e:
                self.log.error("[%s] stop failed: %s", listener.name, e)
                results[listener.name] = CompletionToken(
                    listener=listener.name, drained=False, error=e,
                )

        threads = [
            threading.Thread(target=stop_one, args=(listener,), name=f"{listener.name}-stop")
            for listener in listeners
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        return [results[listener.name] for listener in listeners]

    def shutdown(self) -> list[CompletionToken]:
        """Stop all listeners under one shared deadline.

        Only the first call does anything; later calls return the tokens
        collected by the first.

        Returns:
            One CompletionToken per listener

        Raises:
            ShutdownError: If any listener failed to stop (raised after
                every listener has been waited for)
        """
        with self._state_lock:
            if self.state is not State.RUNNING:
                return self.tokens
            self._set_state(State.SHUTTING_DOWN)

        deadline = time.monotonic() + self.shutdown_timeout
        self.log.info("Shutting down (deadline %.1fs)", self.shutdown_timeout)

        self.tokens = self._stop_all(self.listeners, deadline)

        errors = []
        for token in self.tokens:
            if token.error is not None:
                errors.append((token.listener, token.error))
            elif token.deadline_expired:
                self.log.warning(
                    "[%s] shutdown deadline expired with %d request(s) in flight",
                    token.listener, token.in_flight,
                )

        self._set_state(State.TERMINATED)

        if errors:
            raise ShutdownError(errors)
        return self.tokens

    def abort(self) -> list[CompletionToken]:
        """Close every listener immediately, without draining."""
        with self._state_lock:
            self._set_state(State.SHUTTING_DOWN)
        self.tokens = self._stop_all(self.listeners, time.monotonic())
        self._set_state(State.TERMINATED)
        return self.tokens

    def run(self) -> list[CompletionToken]:
        """Start, wait for the shutdown token, then shut down.

        Returns:
            One CompletionToken per listener

        Raises:
            ListenerError: A listener failed to start or crashed while running
            ShutdownError: A listener failed to stop
        """
        self.start()
        for listener in self.listeners:
            self.log.info("Server running at %s", listener.url)

        self.wait()

        if self._fatal is not None:
            self.log.critical("Aborting: %s", self._fatal)
            self.abort()
            raise self._fatal

        return self.shutdown()
