"""Logging setup for the daemon.

Builds one non-propagating `dualserve` logger writing to a size-rotated log
file. Rotated backups are gzip-compressed and pruned by count and by age.
The logger is created once at startup and handed to the coordinator,
listeners and request handlers.
"""

import gzip
import logging
import os
import shutil
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOGGER_NAME = "dualserve"

# RFC 1123 with numeric zone, e.g. "Mon, 19 Oct 2026 14:03:07 +0000"
LOG_DATE_FORMAT = "%a, %d %b %Y %H:%M:%S %z"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

MEGABYTE = 1024 * 1024


class RetainingRotatingFileHandler(RotatingFileHandler):
    """RotatingFileHandler that compresses backups and drops old ones.

    Backups are named `<file>.1.gz`, `<file>.2.gz`, ... when compression is
    enabled. After each rollover, backups whose modification time is older
    than `max_age_days` are removed (0 disables age pruning).
    """

    def __init__(
        self,
        filename,
        max_bytes: int,
        backup_count: int,
        max_age_days: int = 0,
        compress: bool = True,
        encoding: str = "utf-8",
    ):
        super().__init__(
            filename,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding=encoding,
        )
        self.max_age_days = max_age_days
        self.compress = compress
        if compress:
            self.namer = self._gzip_namer
            self.rotator = self._gzip_rotator
        self.prune_expired()

    @staticmethod
    def _gzip_namer(name: str) -> str:
        return name + ".gz"

    @staticmethod
    def _gzip_rotator(source: str, dest: str) -> None:
        with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
            shutil.copyfileobj(src, dst)
        os.remove(source)

    def backup_paths(self) -> list[Path]:
        """Existing rotated backups, newest first."""
        paths = []
        for i in range(1, self.backupCount + 1):
            path = Path(self.rotation_filename(f"{self.baseFilename}.{i}"))
            if path.exists():
                paths.append(path)
        return paths

    def prune_expired(self, now: float | None = None) -> list[Path]:
        """Delete backups older than max_age_days.

        Returns:
            Paths that were removed
        """
        if self.max_age_days <= 0:
            return []
        cutoff = (now if now is not None else time.time()) - self.max_age_days * 86400
        removed = []
        for path in self.backup_paths():
            try:
                if path.stat().st_mtime < cutoff:
                    path.unlink()
                    removed.append(path)
            except FileNotFoundError:
                pass
        return removed

    def doRollover(self):
        super().doRollover()
        self.prune_expired()


def setup_logging(
    log_file: Path,
    max_size_mb: int,
    backups: int,
    max_age_days: int,
    compress: bool = True,
    verbose: bool = False,
) -> logging.Logger:
    """Configure and return the daemon logger.

    Args:
        log_file: Path of the active log file
        max_size_mb: Size in MB that triggers rotation
        backups: Number of rotated files to keep
        max_age_days: Age in days after which rotated files are deleted
        compress: gzip rotated files
        verbose: DEBUG level and an extra stderr handler

    Returns:
        The `dualserve` logger; module loggers under `dualserve.*` inherit
        its handlers.

    Raises:
        OSError: If the log file cannot be created
    """
    log_file.parent.mkdir(parents=True, exist_ok=True)

    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(logging.DEBUG if verbose else logging.INFO)
    log.propagate = False

    for handler in log.handlers[:]:
        log.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    file_handler = RetainingRotatingFileHandler(
        log_file,
        max_bytes=max_size_mb * MEGABYTE,
        backup_count=backups,
        max_age_days=max_age_days,
        compress=compress,
    )
    file_handler.setFormatter(formatter)
    log.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        log.addHandler(stream_handler)

    return log


def close_logging(log: logging.Logger) -> None:
    """Flush and detach all handlers; records propagate to root again."""
    for handler in log.handlers[:]:
        log.removeHandler(handler)
        handler.close()
    log.propagate = True
