from __future__ import annotations
import enum
import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence

from .config import CONFIG
from .db import CaptureRecord, CaptureStore, CorruptRecordError, PersistenceError, has_vision_result
from .prompt import AnalysisContext
from .storage import KeyExtractionError, ObjectStore, StorageError, extract_object_key
from .thumbnails import ThumbnailError, ThumbnailGenerator
from .vlm import VisionClient, extract_metadata, is_transient

log = logging.getLogger("capture-analysis")


class Outcome(str, enum.Enum):
    COMPLETED = "completed"
    ALREADY_ANALYZED = "already_analyzed"
    MISSING = "missing"
    BAD_KEY = "bad_key"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    PERSISTENCE_FAILURE = "persistence_failure"
    ERROR = "error"


def context_for(capture: CaptureRecord) -> AnalysisContext:
    return AnalysisContext(
        location=capture.location,
        location_info=capture.location_info,
        orientation=capture.orientation,
        captured_at=capture.created_at,
    )


def analyze_with_retry(
    vision: VisionClient,
    image_bytes: bytes,
    context: Optional[AnalysisContext] = None,
    delays: Sequence[float] = CONFIG["VISION_RETRY_DELAYS"],
    sleep: Callable[[float], None] = time.sleep,
) -> Dict[str, Any]:
    """
    Call the vision client, retrying transient failures once per entry in
    `delays` (sleeping that long first). Permanent failures, and the last
    transient one, are re-raised.
    """
    attempt = 0
    while True:
        try:
            return vision.analyze(image_bytes, context)
        except Exception as e:
            if not is_transient(e) or attempt >= len(delays):
                raise
            delay = delays[attempt]
            attempt += 1
            log.warning(
                "Vision call failed transiently (%s); retry %d/%d in %ss",
                e, attempt, len(delays), delay,
            )
            sleep(delay)


def _record_permanent_failure(store: CaptureStore, capture_id: str, error: Exception) -> None:
    try:
        store.increment_attempts(capture_id, str(error))
    except PersistenceError:
        log.exception("Could not record failed attempt for capture %s", capture_id)


def process_capture(
    capture_id: str,
    store: CaptureStore,
    object_store: ObjectStore,
    vision: VisionClient,
    thumbnails: Optional[ThumbnailGenerator] = None,
    retry_delays: Sequence[float] = CONFIG["VISION_RETRY_DELAYS"],
    sleep: Callable[[float], None] = time.sleep,
) -> Outcome:
    """
    Run one queued capture through analysis.

    Queue effects by outcome:
      COMPLETED / ALREADY_ANALYZED   entry marked completed
      PERMANENT_FAILURE              attempts incremented, entry stays pending
                                     (download, vision or undecodable row)
      TRANSIENT_FAILURE, BAD_KEY,
      MISSING, PERSISTENCE_FAILURE   entry untouched
    The thumbnail step runs only after completion and never changes the outcome.
    """
    try:
        capture = store.get_capture(capture_id)
    except CorruptRecordError as e:
        log.error("Capture %s cannot be decoded: %s", capture_id, e)
        _record_permanent_failure(store, capture_id, e)
        return Outcome.PERMANENT_FAILURE
    except PersistenceError as e:
        log.error("Failed to load capture %s: %s", capture_id, e)
        return Outcome.PERSISTENCE_FAILURE
    if capture is None:
        log.warning("Capture %s not found", capture_id)
        return Outcome.MISSING

    if has_vision_result(capture.vision_result):
        try:
            store.mark_completed(capture_id)
        except PersistenceError as e:
            log.error("Failed to mark capture %s completed: %s", capture_id, e)
            return Outcome.PERSISTENCE_FAILURE
        log.info("Capture %s already analyzed; queue entry completed", capture_id)
        return Outcome.ALREADY_ANALYZED

    log.info("Analyzing capture %s", capture_id)

    try:
        key = extract_object_key(capture.image_url)
    except KeyExtractionError as e:
        log.error("Skipping capture %s: %s", capture_id, e)
        return Outcome.BAD_KEY

    try:
        image_bytes = object_store.download(key)
    except StorageError as e:
        log.error("Failed to download %s for capture %s: %s", key, capture_id, e)
        _record_permanent_failure(store, capture_id, e)
        return Outcome.PERMANENT_FAILURE

    try:
        result = analyze_with_retry(
            vision, image_bytes, context_for(capture), delays=retry_delays, sleep=sleep
        )
    except Exception as e:
        if is_transient(e):
            log.warning("Vision service unavailable for capture %s, will retry next cycle: %s", capture_id, e)
            return Outcome.TRANSIENT_FAILURE
        log.error("Failed to analyze capture %s: %s", capture_id, e)
        _record_permanent_failure(store, capture_id, e)
        return Outcome.PERMANENT_FAILURE

    meta = extract_metadata(result)
    try:
        store.save_analysis(
            capture_id,
            result,
            meta.category,
            meta.confidence,
            meta.difficulty,
            meta.verified,
            meta.tags,
        )
    except PersistenceError as e:
        log.error("Failed to save analysis for capture %s: %s", capture_id, e)
        return Outcome.PERSISTENCE_FAILURE

    log.info(
        "Capture %s analyzed successfully: category=%s, confidence=%s, verified=%s",
        capture_id, meta.category, meta.confidence, meta.verified,
    )

    if thumbnails is not None:
        try:
            thumbnails.generate(capture_id, key, image_bytes)
        except (ThumbnailError, PersistenceError) as e:
            log.warning("Thumbnail generation failed for capture %s: %s", capture_id, e)
        except Exception:
            log.exception("Unexpected error generating thumbnail for capture %s", capture_id)

    return Outcome.COMPLETED
