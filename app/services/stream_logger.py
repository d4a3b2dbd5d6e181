# app/services/stream_logger.py
import logging
import queue
import threading

LOG_END = "---LOG-END---"
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class QueueHandler(logging.Handler):
    """
    Puts formatted records into a given queue.

    Only records emitted by the thread that created the handler are kept, so
    two operators streaming two different syncs don't see each other's lines.
    """
    def __init__(self, log_queue, thread_id=None, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.log_queue = log_queue
        self.thread_id = thread_id if thread_id is not None else threading.get_ident()
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record):
        if record.thread != self.thread_id:
            return
        self.log_queue.put(self.format(record))


def iter_log_queue(log_queue, worker, timeout=10):
    """Yields queued lines until LOG_END arrives or the worker thread dies."""
    while True:
        try:
            message = log_queue.get(timeout=timeout)
        except queue.Empty:
            if not worker.is_alive():
                return
            continue
        if message == LOG_END:
            return
        yield message
