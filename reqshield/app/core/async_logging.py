"""Non-blocking delivery of log records.

Security events are emitted on the request path. With async logging
enabled, a logger's handlers are moved behind a bounded queue drained by a
background ``QueueListener`` thread, so a slow sink never adds latency to
an admission decision. When the queue is full the record is dropped.
"""

import atexit
import logging
import queue
from logging.handlers import QueueHandler, QueueListener
from typing import Dict, Optional


class DroppingQueueHandler(QueueHandler):
    """QueueHandler that drops records instead of blocking when full.

    Attributes:
        dropped: Number of records discarded because the queue was full
    """

    def __init__(self, log_queue: "queue.Queue[logging.LogRecord]"):
        super().__init__(log_queue)
        self.dropped = 0

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


# Active listeners keyed by logger name
_listeners: Dict[str, QueueListener] = {}


def enable_async_logging(
    logger_name: str = "reqshield",
    max_queue_size: int = 10000,
) -> Optional[DroppingQueueHandler]:
    """Route a logger's handlers through a background queue.

    Args:
        logger_name: Logger whose handlers are moved behind the queue
        max_queue_size: Records buffered before new ones are dropped

    Returns:
        The queue handler now attached to the logger, or None if the
        logger has no handlers or is already asynchronous.
    """
    if logger_name in _listeners:
        return None

    target = logging.getLogger(logger_name)
    handlers = [h for h in target.handlers if not isinstance(h, QueueHandler)]
    if not handlers:
        return None

    log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(maxsize=max_queue_size)
    queue_handler = DroppingQueueHandler(log_queue)

    listener = QueueListener(log_queue, *handlers, respect_handler_level=True)
    for handler in handlers:
        target.removeHandler(handler)
    target.addHandler(queue_handler)

    listener.start()
    _listeners[logger_name] = listener
    return queue_handler


def disable_async_logging(logger_name: str = "reqshield") -> None:
    """Stop the listener and put the original handlers back."""
    listener = _listeners.pop(logger_name, None)
    if listener is None:
        return

    # stop() drains whatever is still queued
    listener.stop()

    target = logging.getLogger(logger_name)
    for handler in list(target.handlers):
        if isinstance(handler, DroppingQueueHandler):
            target.removeHandler(handler)
    for handler in listener.handlers:
        target.addHandler(handler)


def shutdown_async_logging() -> None:
    """Stop every listener gracefully."""
    for name in list(_listeners):
        disable_async_logging(name)


atexit.register(shutdown_async_logging)
