"""Run logger and the build log mirrored into the report directory."""

from __future__ import annotations

import atexit
import importlib
import importlib.util
import logging
import logging.handlers
from pathlib import Path
import queue


LOGGER_NAME = "cluster_e2e"
BUILD_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


if importlib.util.find_spec("rich") is not None:
    RichHandler = importlib.import_module("rich.logging").RichHandler
    console = importlib.import_module("rich.console").Console(stderr=True)
else:
    RichHandler = None
    console = None


def _console_handler() -> logging.Handler:
    if RichHandler is not None:
        handler = RichHandler(rich_tracebacks=True, console=console, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
        return handler
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
    return handler


def setup_logging(name: str = LOGGER_NAME) -> logging.Logger:
    """Return the run logger with exactly one console handler attached."""

    run_logger = logging.getLogger(name)
    run_logger.setLevel(logging.INFO)
    if not run_logger.handlers:
        run_logger.addHandler(_console_handler())
    run_logger.propagate = False
    return run_logger


logger = setup_logging()


def set_level(level_name: str) -> None:
    """Apply a level name (e.g. ``DEBUG``) to the run logger."""

    level = logging.getLevelName(level_name.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)


class _BuildLog:
    """File sink fed from a queue by a background listener."""

    def __init__(self, path: Path) -> None:
        self.path = path
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(BUILD_LOG_FORMAT))
        records: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
        self.queue_handler = logging.handlers.QueueHandler(records)
        self.queue_handler.setLevel(logging.DEBUG)
        self.listener = logging.handlers.QueueListener(
            records,
            file_handler,
            respect_handler_level=True,
        )

    def attach(self) -> None:
        self.listener.start()
        # storage modules log through the root logger
        logging.getLogger().addHandler(self.queue_handler)
        logger.addHandler(self.queue_handler)

    def detach(self) -> None:
        for target in (logging.getLogger(), logger):
            target.removeHandler(self.queue_handler)
        self.listener.stop()
        for handler in self.listener.handlers:
            handler.close()


_build_log: _BuildLog | None = None
_atexit_registered = False


def enable_file_logging(log_path: Path) -> None:
    """Mirror run logs into the build log at ``log_path``."""

    global _build_log, _atexit_registered

    log_path = log_path.expanduser()
    if _build_log is not None and _build_log.path == log_path:
        return
    disable_file_logging()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    build_log = _BuildLog(log_path)
    build_log.attach()
    _build_log = build_log

    if not _atexit_registered:
        atexit.register(disable_file_logging)
        _atexit_registered = True


def disable_file_logging() -> None:
    """Flush and detach the build log, if one is active."""

    global _build_log

    if _build_log is not None:
        _build_log.detach()
        _build_log = None
