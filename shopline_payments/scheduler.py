import threading
from typing import Callable

from shopline_payments.logging_config import get_logger


class ReconciliationScheduler:
    """Runs a job every ``interval`` seconds until the stop event is set.

    The job receives the stop event so long batches can bail out between
    orders on shutdown.
    """

    def __init__(self, job: Callable[[threading.Event], object], interval: float, logger=None):
        self.job = job
        self.interval = interval
        self.stop_event = threading.Event()
        self.logger = logger or get_logger(__name__)

    def run_once(self):
        try:
            return self.job(self.stop_event)
        except Exception as exc:
            self.logger.exception("Scheduled job failed", error=str(exc))
            return None

    def run_forever(self):
        self.logger.info("Scheduler started", interval=self.interval)
        while not self.stop_event.is_set():
            self.run_once()
            if self.stop_event.wait(self.interval):
                break
        self.logger.info("Scheduler stopped")
