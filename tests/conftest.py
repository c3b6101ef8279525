"""Shared pytest fixtures for dualserve tests."""

import http.client
import shutil
import socket
import ssl
import subprocess
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from dualserve.handlers import HandlerSettings


def _has_openssl():
    """Check if the openssl CLI is available."""
    return shutil.which("openssl") is not None


def pytest_collection_modifyitems(config, items):
    """Skip tests marked with requires_openssl when openssl is not installed."""
    if _has_openssl():
        return
    skip_marker = pytest.mark.skip(reason="requires the openssl command line tool")
    for item in items:
        if "requires_openssl" in item.keywords:
            item.add_marker(skip_marker)


def free_port() -> int:
    """Return a port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def https_connection(host, port, timeout=10):
    """Create HTTPS connection that accepts the self-signed cert."""
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return http.client.HTTPSConnection(host, port, timeout=timeout, context=context)


def multipart_body(fields, boundary="dualserve-test-boundary"):
    """Encode multipart/form-data.

    Args:
        fields: list of (name, filename or None, bytes)

    Returns:
        (content_type, body)
    """
    lines = []
    for name, filename, data in fields:
        lines.append(f"--{boundary}".encode())
        disposition = f'Content-Disposition: form-data; name="{name}"'
        if filename is not None:
            disposition += f'; filename="{filename}"'
        lines.append(disposition.encode())
        if filename is not None:
            lines.append(b"Content-Type: application/octet-stream")
        lines.append(b"")
        lines.append(data)
    lines.append(f"--{boundary}--".encode())
    lines.append(b"")
    return f"multipart/form-data; boundary={boundary}", b"\r\n".join(lines)


@pytest.fixture(scope="session")
def tls_pair(tmp_path_factory):
    """Self-signed cert/key pair shared by the whole session."""
    if not _has_openssl():
        pytest.skip("requires the openssl command line tool")
    cert_dir = tmp_path_factory.mktemp("certs")
    cert_path = cert_dir / "localhost.crt"
    key_path = cert_dir / "localhost.key"
    subprocess.run(
        [
            "openssl", "req",
            "-x509", "-nodes",
            "-newkey", "rsa:2048",
            "-keyout", str(key_path),
            "-out", str(cert_path),
            "-days", "1",
            "-subj", "/CN=localhost",
        ],
        check=True,
        capture_output=True,
    )
    return cert_path, key_path


@pytest.fixture
def served_dirs(tmp_path):
    """Static and upload directories with one static file."""
    static_dir = tmp_path / "public"
    upload_dir = tmp_path / "uploads"
    static_dir.mkdir()
    upload_dir.mkdir()
    (static_dir / "index.html").write_bytes(b"<h1>hello</h1>\n")
    (static_dir / "data.bin").write_bytes(bytes(range(256)) * 4)
    return static_dir, upload_dir


@pytest.fixture
def settings(served_dirs):
    """HandlerSettings pointing at the temporary directories."""
    static_dir, upload_dir = served_dirs
    return HandlerSettings(static_dir=static_dir, upload_dir=upload_dir)
