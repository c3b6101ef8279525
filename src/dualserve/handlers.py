"""Request handlers shared by both listeners.

Routes:
    GET  /hello/{status}  status-echo, empty body
    POST /upload          multipart field "file", saved by its client name
    GET  /*               static files from the static directory
"""

import logging
import os
from dataclasses import dataclass, field
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler
from pathlib import Path
from urllib.parse import urlparse

from werkzeug.exceptions import HTTPException
from werkzeug.formparser import parse_form_data
from werkzeug.serving import DechunkedInput

from dualserve.config import (
    DEFAULT_STATIC_DIR,
    DEFAULT_UNMATCHED_STATUS,
    DEFAULT_UPLOAD_DIR,
)

logger = logging.getLogger(__name__)

HELLO_PREFIX = "/hello/"
UPLOAD_PATH = "/upload"
UPLOAD_FIELD = "file"

# Parse-time memory ceiling for multipart bodies (32 MiB)
MAX_FORM_MEMORY = 32 << 20

# Status-echo vocabulary: token -> (status, log message)
STATUS_TOKENS = {
    "statusok": (HTTPStatus.OK, "status OK"),
    "statusnotnound": (HTTPStatus.NOT_FOUND, "status not found"),
    "statusbadrequest": (HTTPStatus.BAD_REQUEST, "status bad request"),
    "statusinternalservererror": (
        HTTPStatus.INTERNAL_SERVER_ERROR,
        "status internal server error",
    ),
    "statusonauthoritativeinformation": (
        HTTPStatus.NON_AUTHORITATIVE_INFORMATION,
        "status non-authoritative information",
    ),
}


@dataclass
class HandlerSettings:
    """Settings shared by every request on every listener."""

    static_dir: Path = DEFAULT_STATIC_DIR
    upload_dir: Path = DEFAULT_UPLOAD_DIR
    unmatched_status: int = DEFAULT_UNMATCHED_STATUS
    max_form_memory: int = MAX_FORM_MEMORY
    logger: logging.Logger = field(default=logger)


def resolve_status(token: str, unmatched_status: int = DEFAULT_UNMATCHED_STATUS) -> int:
    """Map a status-echo token to its HTTP status code.

    Unknown tokens map to `unmatched_status`.
    """
    if token in STATUS_TOKENS:
        return int(STATUS_TOKENS[token][0])
    return unmatched_status


def upload_filename(client_name: str) -> str | None:
    """Reduce a client-supplied file name to a bare name.

    Directory components (either separator) are dropped. Returns None when
    nothing usable is left or the name holds a NUL byte.
    """
    name = os.path.basename(client_name.replace("\\", "/"))
    if name in ("", ".", "..") or "\x00" in name:
        return None
    return name


class RequestHandler(SimpleHTTPRequestHandler):
    """HTTP request handler used by both the plain and encrypted listener.

    The owning server must expose `settings` (HandlerSettings) and
    `name` (listener name, used in access log lines).
    """

    server_version = "dualserve"
    timeout = 60

    def __init__(self, request, client_address, server):
        self.settings: HandlerSettings = server.settings
        super().__init__(
            request, client_address, server,
            directory=str(self.settings.static_dir),
        )

    @property
    def log(self) -> logging.Logger:
        return self.settings.logger

    def log_message(self, format: str, *args):
        """Override to use the injected logger."""
        self.log.info(
            "[%s] %s - %s",
            getattr(self.server, "name", "-"), self.address_string(), format % args,
        )

    def log_error(self, format: str, *args):
        self.log.warning(
            "[%s] %s - %s",
            getattr(self.server, "name", "-"), self.address_string(), format % args,
        )

    def send_status(self, status: int):
        """Send a status line with an empty body."""
        self.send_response(status)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self):
        """Handle GET requests."""
        path = urlparse(self.path).path

        if path.startswith(HELLO_PREFIX):
            token = path[len(HELLO_PREFIX):]
            if token and "/" not in token:
                self._handle_hello(token)
                return

        super().do_GET()

    def do_POST(self):
        """Handle POST requests."""
        path = urlparse(self.path).path

        if path == UPLOAD_PATH:
            self._handle_upload()
            return

        if path.startswith(HELLO_PREFIX):
            self.send_error(HTTPStatus.METHOD_NOT_ALLOWED)
            return

        self.send_error(HTTPStatus.NOT_FOUND)

    def _handle_hello(self, token: str):
        """Handle /hello/{status}."""
        if token in STATUS_TOKENS:
            status, message = STATUS_TOKENS[token]
            self.log.info(message)
        else:
            status = self.settings.unmatched_status
            self.log.debug("Unmatched status token %r, answering %d", token, status)
        self.send_status(status)

    def _handle_upload(self):
        """Handle /upload: persist the "file" field under its client name."""
        environ = {
            "REQUEST_METHOD": "POST",
            "CONTENT_TYPE": self.headers.get("Content-Type", ""),
            "CONTENT_LENGTH": self.headers.get("Content-Length", ""),
            "wsgi.input": self.rfile,
        }
        if self.headers.get("Transfer-Encoding", "").strip().lower() == "chunked":
            environ["wsgi.input"] = DechunkedInput(self.rfile)
            environ["wsgi.input_terminated"] = True
        try:
            _, _, files = parse_form_data(
                environ, max_form_memory_size=self.settings.max_form_memory
            )
        except HTTPException as e:
            self.log.info("cannot read file : %s", e)
            self.send_status(HTTPStatus.BAD_REQUEST)
            return

        upload = files.get(UPLOAD_FIELD)
        if upload is None or not upload.filename:
            self.log.info("cannot read file : missing %r field", UPLOAD_FIELD)
            self.send_status(HTTPStatus.BAD_REQUEST)
            return

        name = upload_filename(upload.filename)
        if name is None:
            self.log.info("cannot read file : invalid file name %r", upload.filename)
            self.send_status(HTTPStatus.BAD_REQUEST)
            return

        try:
            try:
                data = upload.read()
            except OSError as e:
                self.log.info("cannot read file : %s", e)
                self.send_status(HTTPStatus.INTERNAL_SERVER_ERROR)
                return

            target = Path(self.settings.upload_dir) / name
            try:
                target.write_bytes(data)
            except OSError as e:
                self.log.info("cannot create file : %s", e)
                self.send_status(HTTPStatus.INTERNAL_SERVER_ERROR)
                return
        finally:
            upload.close()

        self.log.info("file %s saved", name)
        self.send_status(HTTPStatus.OK)
