"""Polling loop that drains the analysis queue one capture at a time."""
from __future__ import annotations
import logging
import threading
import time
from collections import Counter
from typing import Callable, Dict, Optional, Sequence

from .config import ANALYSIS_WORKER_INTERVAL_SECONDS, CONFIG
from .db import CaptureStore, PersistenceError
from .pipeline import Outcome, process_capture
from .storage import ObjectStore
from .thumbnails import ThumbnailGenerator
from .vlm import VisionClient

log = logging.getLogger("capture-analysis")


class AnalysisWorker:
    """
    Single-instance worker. Batches are processed sequentially and ticks never
    overlap. There is no leasing, so two workers on one queue may analyze the
    same capture twice.
    """

    def __init__(
        self,
        store: CaptureStore,
        object_store: ObjectStore,
        vision: VisionClient,
        interval_seconds: float = ANALYSIS_WORKER_INTERVAL_SECONDS,
        thumbnails: Optional[ThumbnailGenerator] = None,
        batch_size: int = CONFIG["ANALYSIS_BATCH_SIZE"],
        retry_delays: Sequence[float] = CONFIG["VISION_RETRY_DELAYS"],
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.object_store = object_store
        self.vision = vision
        self.interval_seconds = interval_seconds
        self.thumbnails = thumbnails
        self.batch_size = batch_size
        self.retry_delays = retry_delays
        self.sleep = sleep
        self._stop = threading.Event()

    def run_once(self) -> Dict[Outcome, int]:
        """One tick: fetch a batch of pending captures and process each in turn."""
        try:
            pending = self.store.fetch_pending(self.batch_size)
        except PersistenceError as e:
            log.error("Error fetching pending analyses: %s", e)
            return {}
        if not pending:
            return {}

        log.info("Processing %d pending analyses", len(pending))
        outcomes: Counter = Counter()
        for capture_id in pending:
            if self._stop.is_set():
                break
            try:
                outcome = process_capture(
                    capture_id,
                    self.store,
                    self.object_store,
                    self.vision,
                    thumbnails=self.thumbnails,
                    retry_delays=self.retry_delays,
                    sleep=self.sleep,
                )
            except Exception:
                log.exception("Unexpected error processing capture %s", capture_id)
                outcome = Outcome.ERROR
            outcomes[outcome] += 1
        log.info("Batch done: %s", ", ".join(f"{o.value}={n}" for o, n in outcomes.items()))
        return dict(outcomes)

    def run_forever(self) -> None:
        log.info("Starting analysis worker with interval: %ss", self.interval_seconds)
        next_tick = time.monotonic()
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                log.exception("Error processing analyses")
            next_tick += self.interval_seconds
            # a batch that overran the interval starts the next tick right away
            delay = next_tick - time.monotonic()
            if delay <= 0:
                next_tick = time.monotonic()
                continue
            self._stop.wait(delay)
        log.info("Analysis worker stopped")

    def stop(self) -> None:
        self._stop.set()
