from __future__ import annotations
import argparse
import logging
import signal
import sys

from .config import (
    ANALYSIS_WORKER_ENABLED,
    ANALYSIS_WORKER_INTERVAL_SECONDS,
    CONFIG,
    DB_DEFAULT,
    LOG_LEVEL,
    STORAGE_BACKEND,
    THUMBNAIL_GENERATION_ENABLED,
)
from .db import CaptureStore, ensure_schema
from .storage import create_object_store
from .thumbnails import ThumbnailGenerator
from .vlm import VisionClient
from .worker import AnalysisWorker

log = logging.getLogger("capture-analysis")


def setup_logging(level: str = LOG_LEVEL) -> None:
    log.setLevel(level)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    log.addHandler(handler)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Capture analysis worker")
    parser.add_argument("--db", default=DB_DEFAULT, help="Path to SQLite DB")
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit")
    parser.add_argument(
        "--interval", type=float, default=ANALYSIS_WORKER_INTERVAL_SECONDS, help="Polling interval (seconds)"
    )
    parser.add_argument("--limit", type=int, default=CONFIG["ANALYSIS_BATCH_SIZE"], help="Batch size")
    parser.add_argument("--storage", choices=("s3", "local"), default=STORAGE_BACKEND)
    parser.add_argument(
        "--enqueue-missing",
        action="store_true",
        help="Queue captures without a vision result that have no queue entry",
    )
    args = parser.parse_args(argv)

    setup_logging()

    if not ANALYSIS_WORKER_ENABLED and not args.once:
        log.info("Analysis worker disabled (ANALYSIS_WORKER_ENABLED=false)")
        return 0

    ensure_schema(args.db)
    store = CaptureStore(args.db)
    if args.enqueue_missing:
        log.info("Enqueued %d captures for analysis", store.enqueue_unanalyzed())

    object_store = create_object_store(args.storage)
    thumbnails = ThumbnailGenerator(store, object_store) if THUMBNAIL_GENERATION_ENABLED else None
    worker = AnalysisWorker(
        store,
        object_store,
        VisionClient(),
        interval_seconds=args.interval,
        thumbnails=thumbnails,
        batch_size=args.limit,
    )

    if args.once:
        outcomes = worker.run_once()
        if not outcomes:
            print("No pending analyses.")
        for outcome, count in outcomes.items():
            print(f"{outcome.value}: {count}")
        return 0

    def _shutdown(signum, _frame):
        log.info("Received signal %s, stopping after current capture", signum)
        worker.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    worker.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
