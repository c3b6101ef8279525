"""Tests for dualserve/listener.py - listener start/stop and draining."""

import http.client
import socket
import threading
import time
from unittest.mock import patch

import pytest

from conftest import https_connection

from dualserve.handlers import RequestHandler
from dualserve.listener import (
    CompletionToken,
    EncryptedTransport,
    Listener,
    ListenerError,
    ListenerServer,
    PlainTransport,
)


def make_slow_handler(started: threading.Event, release: threading.Event):
    """Handler class whose /slow route blocks until `release` is set."""

    class SlowHandler(RequestHandler):
        def do_GET(self):
            if self.path == "/slow":
                started.set()
                release.wait(10)
                self.send_status(200)
                return
            super().do_GET()

    return SlowHandler


def fetch(port, path, results, tls=False):
    """GET path and append the status (or the exception) to results."""
    try:
        if tls:
            conn = https_connection("127.0.0.1", port)
        else:
            conn = http.client.HTTPConnection("127.0.0.1", port, timeout=10)
        conn.request("GET", path)
        response = conn.getresponse()
        response.read()
        results.append(response.status)
        conn.close()
    except Exception as e:
        results.append(e)


def refuses_connections(port, timeout=2.0) -> bool:
    """Poll until connecting to port fails."""
    end = time.monotonic() + timeout
    while time.monotonic() < end:
        try:
            with socket.create_connection(("127.0.0.1", port), timeout=0.5):
                pass
        except OSError:
            return True
        time.sleep(0.05)
    return False


class TestListenerInit:
    """Tests for Listener construction."""

    def test_not_running_before_start(self, settings):
        listener = Listener("http", "127.0.0.1", 0, PlainTransport(), settings=settings)
        assert listener.running is False
        assert listener.server is None

    def test_url(self, settings):
        listener = Listener("https", "", 8085, EncryptedTransport("a.crt", "a.key"))
        assert listener.url == "https://0.0.0.0:8085"


class TestListenerStart:
    """Tests for Listener.start."""

    def test_start_binds_os_port(self, settings):
        listener = Listener("http", "127.0.0.1", 0, PlainTransport(), settings=settings)
        listener.start()
        try:
            assert listener.running
            assert listener.port != 0
            results = []
            fetch(listener.port, "/hello/statusok", results)
            assert results == [200]
        finally:
            listener.stop(time.monotonic() + 2)

    def test_start_twice(self, settings):
        listener = Listener("http", "127.0.0.1", 0, PlainTransport(), settings=settings)
        listener.start()
        try:
            with pytest.raises(ListenerError):
                listener.start()
        finally:
            listener.stop(time.monotonic() + 2)

    def test_address_in_use(self, settings):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]

            listener = Listener("http", "127.0.0.1", port, PlainTransport(), settings=settings)
            with pytest.raises(ListenerError) as exc_info:
                listener.start()

        assert exc_info.value.listener == "http"
        assert "cannot bind" in str(exc_info.value)
        assert listener.server is None

    def test_missing_certificate(self, settings, tmp_path):
        transport = EncryptedTransport(tmp_path / "none.crt", tmp_path / "none.key")
        listener = Listener("https", "127.0.0.1", 0, transport, settings=settings)

        with pytest.raises(ListenerError) as exc_info:
            listener.start()

        assert "TLS setup failed" in str(exc_info.value)
        assert listener.server is None

    def test_invalid_certificate(self, settings, tmp_path):
        cert = tmp_path / "bad.crt"
        key = tmp_path / "bad.key"
        cert.write_text("garbage")
        key.write_text("garbage")
        listener = Listener("https", "127.0.0.1", 0, EncryptedTransport(cert, key), settings=settings)

        with pytest.raises(ListenerError):
            listener.start()

    def test_loop_crash_reports_fatal(self, settings):
        crashed = threading.Event()
        seen = []

        def on_fatal(listener, error):
            seen.append((listener.name, error))
            crashed.set()

        listener = Listener(
            "http", "127.0.0.1", 0, PlainTransport(), settings=settings, on_fatal=on_fatal,
        )
        with patch.object(ListenerServer, "serve_forever", side_effect=RuntimeError("boom")):
            listener.start()
            assert crashed.wait(5)

        assert seen[0][0] == "http"
        assert str(seen[0][1]) == "boom"
        token = listener.stop(time.monotonic())
        assert token.error is None


@pytest.mark.requires_openssl
class TestEncryptedListener:
    """Tests for the TLS transport."""

    @pytest.fixture
    def listener(self, settings, tls_pair):
        listener = Listener("https", "127.0.0.1", 0, EncryptedTransport(*tls_pair), settings=settings)
        listener.start()
        yield listener
        listener.stop(time.monotonic() + 2)

    def test_serves_same_routes(self, listener):
        results = []
        fetch(listener.port, "/hello/statusonauthoritativeinformation", results, tls=True)
        fetch(listener.port, "/index.html", results, tls=True)
        assert results == [203, 200]

    def test_plain_client_does_not_break_listener(self, listener):
        with socket.create_connection(("127.0.0.1", listener.port), timeout=5) as sock:
            sock.sendall(b"GET / HTTP/1.0\r\n\r\n")
            try:
                sock.recv(1024)
            except OSError:
                pass

        results = []
        fetch(listener.port, "/hello/statusok", results, tls=True)
        assert results == [200]

    def test_stalled_handshake_does_not_block_accept(self, listener):
        # Connect but never send a ClientHello
        with socket.create_connection(("127.0.0.1", listener.port), timeout=5):
            results = []
            fetch(listener.port, "/hello/statusok", results, tls=True)
        assert results == [200]


class TestListenerStop:
    """Tests for Listener.stop and in-flight draining."""

    def _start_slow(self, settings):
        started = threading.Event()
        release = threading.Event()
        listener = Listener(
            "http", "127.0.0.1", 0, PlainTransport(), settings=settings,
            handler_class=make_slow_handler(started, release),
        )
        listener.start()
        results = []
        client = threading.Thread(target=fetch, args=(listener.port, "/slow", results))
        client.start()
        assert started.wait(5)
        return listener, release, client, results

    def test_idle_stop(self, settings):
        listener = Listener("http", "127.0.0.1", 0, PlainTransport(), settings=settings)
        listener.start()
        port = listener.port

        start = time.monotonic()
        token = listener.stop(time.monotonic() + 5)

        assert token == CompletionToken(listener="http", drained=True, in_flight=0)
        assert time.monotonic() - start < 2
        assert listener.running is False
        assert refuses_connections(port)

    def test_stop_twice_is_already_closed(self, settings):
        listener = Listener("http", "127.0.0.1", 0, PlainTransport(), settings=settings)
        listener.start()
        listener.stop(time.monotonic() + 2)

        token = listener.stop(time.monotonic() + 2)

        assert token.already_closed
        assert token.error is None

    def test_stop_never_started(self, settings):
        listener = Listener("http", "127.0.0.1", 0, PlainTransport(), settings=settings)
        token = listener.stop(time.monotonic())
        assert token.already_closed

    def test_in_flight_request_completes(self, settings):
        listener, release, client, results = self._start_slow(settings)
        timer = threading.Timer(0.3, release.set)
        timer.start()

        token = listener.stop(time.monotonic() + 5)
        client.join(5)

        assert token.drained
        assert token.in_flight == 0
        assert results == [200]

    def test_no_new_connections_while_draining(self, settings):
        listener, release, client, results = self._start_slow(settings)
        port = listener.port
        tokens = []
        stopper = threading.Thread(
            target=lambda: tokens.append(listener.stop(time.monotonic() + 5))
        )
        stopper.start()

        try:
            assert refuses_connections(port)
            assert results == []  # slow request still running
        finally:
            release.set()
            stopper.join(5)
            client.join(5)

        assert tokens[0].drained
        assert results == [200]

    def test_deadline_expires(self, settings):
        listener, release, client, results = self._start_slow(settings)

        start = time.monotonic()
        token = listener.stop(time.monotonic() + 0.3)
        elapsed = time.monotonic() - start

        assert token.drained is False
        assert token.deadline_expired
        assert token.in_flight == 1
        assert elapsed < 2

        # The request was not killed; it can still finish
        release.set()
        client.join(5)
        assert results == [200]
