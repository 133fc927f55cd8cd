import signal
import threading

from shopline_payments.config import get_settings
from shopline_payments.database import Base, SessionLocal, engine
from shopline_payments.logging_config import configure_logging, get_logger
from shopline_payments.scheduler import ReconciliationScheduler
from shopline_payments.services import build_reconciler

logger = get_logger("shopline_payments.worker")


def make_sync_job(reconciler, session_factory=SessionLocal):
    def sync_job(stop_event: threading.Event):
        db = session_factory()
        try:
            batch = reconciler.sync_pending_orders(db, stop_event=stop_event)
        finally:
            db.close()
        return batch

    return sync_job


def start_worker():
    settings = get_settings()
    configure_logging(settings.log_level, settings.environment)
    logger.info("Starting Shopline status sync worker...", interval=settings.sync_interval_seconds)

    # Ensure tables exist
    Base.metadata.create_all(bind=engine)

    scheduler = ReconciliationScheduler(
        make_sync_job(build_reconciler(settings)),
        interval=settings.sync_interval_seconds,
        logger=logger,
    )

    def shutdown(signum, frame):
        logger.info("Worker stopping...", signal=signum)
        scheduler.stop_event.set()

    signal.signal(signal.SIGTERM, shutdown)

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Worker stopping...")
        scheduler.stop_event.set()


if __name__ == "__main__":
    start_worker()
