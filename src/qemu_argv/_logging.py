"""Logging setup shared by every qemu_argv module.

Importing the package only installs a NullHandler on the ``qemu_argv``
logger. Output to stderr is opt-in through configure_logging(), which the
CLI calls. QEMU_ARGV_LOG_LEVEL sets the starting level.

Lines look like::

    WARNING [2026-02-25 10:02:54] qemu_argv.memory - message
"""

import contextlib
import logging
import logging.handlers
import os
import queue

import click

LIBRARY_LOGGER_NAME: str = "qemu_argv"
LOG_LEVEL_ENV: str = "QEMU_ARGV_LOG_LEVEL"

_FMT = "%(levelname)s [%(asctime)s] %(name)s - %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"
_QUEUE_CAPACITY = 1024


def level_from_env(value: str | None) -> int | None:
    """Numeric level named by `value`, or None when unset, unknown or NOTSET."""
    if not value:
        return None
    return logging.getLevelNamesMapping().get(value.strip().upper()) or None


_library_logger = logging.getLogger(LIBRARY_LOGGER_NAME)
_library_logger.addHandler(logging.NullHandler())
if (_initial_level := level_from_env(os.environ.get(LOG_LEVEL_ENV))) is not None:
    _library_logger.setLevel(_initial_level)


class _StderrHandler(logging.Handler):
    """Dimmed click.echo to stderr. Called from the listener thread only."""

    def __init__(self) -> None:
        super().__init__()
        self.setFormatter(logging.Formatter(fmt=_FMT, datefmt=_DATEFMT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            click.echo(click.style(self.format(record), dim=True), err=True)
        except BlockingIOError:
            pass
        except Exception:  # noqa: BLE001
            self.handleError(record)


class _NonBlockingHandler(logging.handlers.QueueHandler):
    """Hands records to a listener thread; drops them once the queue is full."""

    def __init__(self) -> None:
        records: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=_QUEUE_CAPACITY)
        super().__init__(records)
        self._listener = logging.handlers.QueueListener(records, _StderrHandler(), respect_handler_level=False)
        self._listener.start()

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # In-process queue: the record is passed as is.
        return record

    def enqueue(self, record: logging.LogRecord) -> None:
        with contextlib.suppress(queue.Full):
            self.queue.put_nowait(record)

    def close(self) -> None:
        self._listener.stop()
        super().close()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def configure_logging(*, level: int | str | None = None, quiet: bool = False) -> None:
    """Send library records to stderr.

    Safe to call repeatedly: at most one stderr handler is attached. `quiet`
    forces ERROR and wins over `level`; with neither, the current level
    (possibly from QEMU_ARGV_LOG_LEVEL) stays.
    """
    if not any(isinstance(h, _NonBlockingHandler) for h in _library_logger.handlers):
        _library_logger.addHandler(_NonBlockingHandler())

    if quiet:
        _library_logger.setLevel(logging.ERROR)
    elif level is not None:
        _library_logger.setLevel(level)
