"""
Queue-backed logging for the control loop.

While the loop runs, records from every ``towercrane.*`` logger (controller,
cycle, planner, kinematics) are enqueued on the tick thread and written by a
QueueListener thread, so a slow stderr or file handler never stretches a tick.
"""

import logging
import queue
from logging.handlers import QueueHandler, QueueListener

import numpy as np

_exc_formatter = logging.Formatter()


class TickQueueHandler(QueueHandler):
    """Enqueues records unformatted, with numpy arguments frozen as lists.

    Message formatting runs on the listener thread. Array arguments are copied
    here since the tick thread keeps writing crane state after the call;
    tracebacks are rendered here while the frames are still alive.
    """

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        record = logging.makeLogRecord(record.__dict__)
        if isinstance(record.args, tuple):
            record.args = tuple(
                a.tolist() if isinstance(a, np.ndarray) else a for a in record.args
            )
        if record.exc_info:
            record.exc_text = _exc_formatter.formatException(record.exc_info)
            record.exc_info = None
        return record


class AsyncLogHandler:
    """Routes a logger subtree through a TickQueueHandler while started."""

    def __init__(self, logger_name: str = "towercrane"):
        self._queue: queue.Queue[logging.LogRecord] = queue.Queue(-1)
        self._logger = logging.getLogger(logger_name)
        self._listener: QueueListener | None = None
        # Handlers and propagate flag to put back on stop()
        self._saved: tuple[list[logging.Handler], bool] | None = None

    @property
    def started(self) -> bool:
        return self._saved is not None

    def _reached_handlers(self) -> list[logging.Handler]:
        """Handlers a record from the wrapped logger reaches, in call order."""
        handlers: list[logging.Handler] = []
        current: logging.Logger | None = self._logger
        while current is not None:
            handlers.extend(current.handlers)
            if not current.propagate:
                break
            current = current.parent
        return handlers

    def start(self) -> None:
        """Swap the subtree's output for the queue. No-op without handlers."""
        if self._saved is not None:
            return

        handlers = self._reached_handlers()
        if not handlers:
            return

        self._saved = (self._logger.handlers[:], self._logger.propagate)
        self._logger.handlers = [TickQueueHandler(self._queue)]
        self._logger.propagate = False
        self._listener = QueueListener(
            self._queue, *handlers, respect_handler_level=True
        )
        self._listener.start()

    def stop(self) -> None:
        """Flush queued records and restore the original handlers."""
        if self._saved is None:
            return

        if self._listener is not None:
            self._listener.stop()
            self._listener = None

        self._logger.handlers, self._logger.propagate = self._saved
        self._saved = None
