"""Shared utility functions."""

import logging
import subprocess
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from .errors import CommandError

logger = logging.getLogger("provisionvm")

FILE_LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"


class LogStream:
    """File-like stream that routes output through the logger line by line.

    Used as out_stream/err_stream in fabric c.run() calls and for streamed
    local subprocess output, so everything ends up in the run log.
    """

    def __init__(self, prefix: str = "") -> None:
        self._buf = ""
        self._prefix = prefix

    def write(self, text: str) -> None:
        self._buf += text
        while "\n" in self._buf:
            line, self._buf = self._buf.split("\n", 1)
            if line.strip():
                logger.info(f"{self._prefix}{line}")

    def flush(self) -> None:
        if self._buf.strip():
            logger.info(f"{self._prefix}{self._buf}")
            self._buf = ""


def setup_logging(level: int | str = logging.INFO, log_file: str | Path | None = None) -> None:
    """Set up logging with Rich handler to stderr and an optional plain log file.

    :param level: Log level name or number
    :param log_file: Path of a persistent log file (the motd notice points here)
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(path)
        except OSError as e:
            logger.warning(f"Cannot open log file '{path}': {e}")
        else:
            file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
            file_handler.setLevel(level)
            root_logger.addHandler(file_handler)

    for name, lvl in [
        ("boto3", logging.WARNING),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
        ("httpx", logging.WARNING),
        ("httpcore", logging.WARNING),
        ("paramiko", logging.WARNING),
        ("fabric", logging.WARNING),
        ("invoke", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def run_proc(*args) -> subprocess.CompletedProcess:
    """Execute local command without checking its exit status."""
    return subprocess.run(args, capture_output=True, text=True)


def run_cmd(*args, check: bool = True) -> str:
    """Execute local command and return stdout.

    :raises CommandError: If check is set and the command exits non-zero
    """
    result = run_proc(*args)
    if check and result.returncode != 0:
        raise CommandError(args, result.returncode, result.stderr)
    return result.stdout.strip()
