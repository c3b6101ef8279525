"""TLS certificate handling for the encrypted listener.

Validates certificate/key pairs, builds the server SSL context, and can
generate a self-signed pair for local development.
"""

import logging
import os
import socket
import ssl
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Certificate defaults
DEFAULT_CERT_DAYS = 365
DEFAULT_KEY_SIZE = 2048


@dataclass(frozen=True)
class TLSConfig:
    """Certificate/key pair for the encrypted listener."""

    cert_path: Path
    key_path: Path

    @classmethod
    def from_paths(cls, cert_path: Path, key_path: Path) -> "TLSConfig":
        """Create config from existing certificate files.

        Raises:
            FileNotFoundError: If either file doesn't exist
        """
        if not cert_path.exists():
            raise FileNotFoundError(f"Certificate not found: {cert_path}")
        if not key_path.exists():
            raise FileNotFoundError(f"Key not found: {key_path}")
        return cls(cert_path=cert_path, key_path=key_path)

    def server_context(self) -> ssl.SSLContext:
        """Build a server-side SSL context for this pair.

        Raises:
            ssl.SSLError: If the files are not a matching PEM cert/key pair
            OSError: If the files cannot be read
        """
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        context.load_cert_chain(
            certfile=str(self.cert_path),
            keyfile=str(self.key_path),
        )
        return context


def get_cert_fingerprint(cert_path: Path) -> str:
    """Get SHA256 fingerprint of a certificate.

    Returns:
        Fingerprint as hex with colons (e.g., "AB:CD:EF:...")

    Raises:
        subprocess.CalledProcessError: If openssl command fails
    """
    result = subprocess.run(
        [
            "openssl", "x509",
            "-in", str(cert_path),
            "-noout",
            "-fingerprint",
            "-sha256",
        ],
        capture_output=True,
        text=True,
        check=True,
    )
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    output = result.stdout.strip()
    if "=" in output:
        return output.split("=", 1)[1]
    return output


def generate_self_signed_cert(
    cert_path: Path,
    key_path: Path,
    hostname: Optional[str] = None,
    days: int = DEFAULT_CERT_DAYS,
    key_size: int = DEFAULT_KEY_SIZE,
    force: bool = False,
) -> TLSConfig:
    """Generate a self-signed certificate with openssl.

    The certificate has CN = hostname and SAN entries for the hostname,
    localhost and 127.0.0.1.

    Args:
        cert_path: Where to write the PEM certificate
        key_path: Where to write the PEM private key
        hostname: CN for the certificate (default: system hostname)
        days: Validity in days
        key_size: RSA key size in bits
        force: Overwrite an existing pair

    Returns:
        TLSConfig for the pair

    Raises:
        subprocess.CalledProcessError: If openssl fails
    """
    if cert_path.exists() and key_path.exists() and not force:
        logger.info("Using existing certificate: %s", cert_path)
        return TLSConfig.from_paths(cert_path, key_path)

    hostname = hostname or socket.gethostname()
    logger.info("Generating self-signed certificate for %s", hostname)

    cert_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.parent.mkdir(parents=True, exist_ok=True)

    san = f"subjectAltName=DNS:{hostname},DNS:localhost,IP:127.0.0.1"
    subprocess.run(
        [
            "openssl", "req",
            "-x509",
            "-nodes",
            "-newkey", f"rsa:{key_size}",
            "-keyout", str(key_path),
            "-out", str(cert_path),
            "-days", str(days),
            "-subj", f"/CN={hostname}",
            "-addext", san,
        ],
        check=True,
        capture_output=True,
    )

    # Restrictive permissions on the key
    os.chmod(key_path, 0o600)
    os.chmod(cert_path, 0o644)

    logger.info("Certificate fingerprint (SHA256): %s", get_cert_fingerprint(cert_path))

    return TLSConfig(cert_path=cert_path, key_path=key_path)
