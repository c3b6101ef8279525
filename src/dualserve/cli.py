"""Command-line entry point.

Starts the plain and encrypted listeners, waits for SIGINT/SIGTERM, and
shuts both down under one deadline.

Exit codes: 0 = clean shutdown (including an expired deadline),
1 = configuration, startup or shutdown error.
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

from dualserve.config import (
    ConfigError,
    DEFAULT_BIND,
    DEFAULT_CERT_FILE,
    DEFAULT_HTTP_PORT,
    DEFAULT_HTTPS_PORT,
    DEFAULT_KEY_FILE,
    DEFAULT_LOG_BACKUPS,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_MAX_AGE_DAYS,
    DEFAULT_LOG_MAX_SIZE_MB,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_STATIC_DIR,
    DEFAULT_UNMATCHED_STATUS,
    DEFAULT_UPLOAD_DIR,
    load_config,
)
from dualserve.coordinator import Coordinator, ShutdownError
from dualserve.listener import ListenerError
from dualserve.logsetup import close_logging, setup_logging
from dualserve.tls import generate_self_signed_cert

logger = logging.getLogger(__name__)

# argparse dest -> ServerConfig field
_OVERRIDE_FIELDS = {
    "size": "log_max_size_mb",
    "backups": "log_backups",
    "age": "log_max_age_days",
    "cert": "cert_file",
    "key": "key_file",
    "bind": "bind",
    "http_port": "http_port",
    "https_port": "https_port",
    "static_dir": "static_dir",
    "upload_dir": "upload_dir",
    "log_file": "log_file",
    "shutdown_timeout": "shutdown_timeout",
    "unmatched_status": "unmatched_status",
    "generate_cert": "generate_cert",
    "verbose": "verbose",
}


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser.

    Every option defaults to None so that only flags given on the command
    line override the config file; help texts show the built-in defaults.
    """
    parser = argparse.ArgumentParser(
        prog="dualserve",
        description="Serve files and uploads over HTTP and HTTPS",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        help="YAML config file (default: $DUALSERVE_CONFIG)",
    )

    # Log rotation
    parser.add_argument(
        "--size",
        type=int,
        help=f"max size log file in MB (default: {DEFAULT_LOG_MAX_SIZE_MB})",
    )
    parser.add_argument(
        "--backups",
        type=int,
        help=f"maximum number of old log files to retain (default: {DEFAULT_LOG_BACKUPS})",
    )
    parser.add_argument(
        "--age",
        type=int,
        help=f"maximum number of days to retain old log files (default: {DEFAULT_LOG_MAX_AGE_DAYS})",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help=f"log file path (default: {DEFAULT_LOG_FILE})",
    )

    # TLS options
    parser.add_argument(
        "--cert",
        type=Path,
        help=f"path to server certificate (default: {DEFAULT_CERT_FILE})",
    )
    parser.add_argument(
        "--key",
        type=Path,
        help=f"path to server certificate key (default: {DEFAULT_KEY_FILE})",
    )
    parser.add_argument(
        "--generate-cert",
        action="store_true",
        default=None,
        help="generate a self-signed certificate if --cert/--key do not exist",
    )

    # Listeners
    parser.add_argument(
        "--bind", "-b",
        help=f"address to bind to (default: {DEFAULT_BIND!r}, all interfaces)",
    )
    parser.add_argument(
        "--http-port",
        type=int,
        help=f"plain HTTP port (default: {DEFAULT_HTTP_PORT})",
    )
    parser.add_argument(
        "--https-port",
        type=int,
        help=f"HTTPS port (default: {DEFAULT_HTTPS_PORT})",
    )
    parser.add_argument(
        "--static-dir",
        type=Path,
        help=f"directory served for unmatched GET paths (default: {DEFAULT_STATIC_DIR})",
    )
    parser.add_argument(
        "--upload-dir",
        type=Path,
        help=f"directory uploads are written to (default: {DEFAULT_UPLOAD_DIR})",
    )
    parser.add_argument(
        "--shutdown-timeout",
        type=float,
        help=f"seconds allowed for graceful shutdown (default: {DEFAULT_SHUTDOWN_TIMEOUT})",
    )
    parser.add_argument(
        "--unmatched-status",
        type=int,
        help=f"status for unknown /hello tokens (default: {DEFAULT_UNMATCHED_STATUS})",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        default=None,
        help="Enable verbose logging (also to stderr)",
    )
    return parser


def main(argv=None) -> int:
    """CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    args = build_parser().parse_args(argv)

    overrides = {field: getattr(args, dest) for dest, field in _OVERRIDE_FIELDS.items()}
    try:
        config = load_config(args.config, overrides)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        log = setup_logging(
            config.log_file,
            max_size_mb=config.log_max_size_mb,
            backups=config.log_backups,
            max_age_days=config.log_max_age_days,
            compress=config.log_compress,
            verbose=config.verbose,
        )
    except OSError as e:
        print(f"Error: cannot create log file: {e}", file=sys.stderr)
        return 1

    try:
        return _serve(config, log)
    finally:
        close_logging(log)


def _serve(config, log: logging.Logger) -> int:
    """Run the coordinator until shutdown; map outcomes to exit codes."""
    if config.generate_cert:
        try:
            generate_self_signed_cert(config.cert_file, config.key_file)
        except (OSError, subprocess.CalledProcessError) as e:
            log.error("Failed to generate TLS cert: %s", e)
            return 1

    coordinator = Coordinator.from_config(config, log=log)
    coordinator.install_signal_handlers()
    try:
        coordinator.run()
    except ListenerError as e:
        log.error("Failed to start server: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ShutdownError as e:
        log.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        coordinator.restore_signal_handlers()

    print("server ending work")
    return 0


if __name__ == "__main__":
    sys.exit(main())
