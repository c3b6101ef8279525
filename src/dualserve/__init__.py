"""Dual-protocol (HTTP and HTTPS) file-serving and upload daemon.

Two listeners, one plain and one TLS, share a single route table and are
started and stopped together by a lifecycle coordinator.
"""

from dualserve.config import (
    ConfigError,
    ServerConfig,
    load_config,
)
from dualserve.coordinator import (
    Coordinator,
    ShutdownError,
    ShutdownToken,
    State,
)
from dualserve.handlers import (
    HandlerSettings,
    RequestHandler,
    STATUS_TOKENS,
)
from dualserve.listener import (
    CompletionToken,
    EncryptedTransport,
    Listener,
    ListenerError,
    PlainTransport,
)
from dualserve.logsetup import setup_logging
from dualserve.tls import TLSConfig, generate_self_signed_cert

__version__ = "0.1.0"

__all__ = [
    # Config
    "ConfigError",
    "ServerConfig",
    "load_config",
    # Coordinator
    "Coordinator",
    "ShutdownError",
    "ShutdownToken",
    "State",
    # Handlers
    "HandlerSettings",
    "RequestHandler",
    "STATUS_TOKENS",
    # Listener
    "CompletionToken",
    "EncryptedTransport",
    "Listener",
    "ListenerError",
    "PlainTransport",
    # Logging / TLS
    "setup_logging",
    "TLSConfig",
    "generate_self_signed_cert",
]
