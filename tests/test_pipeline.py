import sqlite3
import threading
import time

import pytest
from PIL import Image

from capture_analysis.db import STATUS_COMPLETED, STATUS_PENDING, CaptureStore, PersistenceError
from capture_analysis.pipeline import Outcome, analyze_with_retry, process_capture
from capture_analysis.thumbnails import ThumbnailGenerator
from capture_analysis.vlm import MalformedResultError, VisionApiError
from capture_analysis.worker import AnalysisWorker

from conftest import FakeVision

IMAGE_KEY = "captures/1700000000/photo.jpg"
RESULT = {
    "name": "Arenal Volcano",
    "category": "NATURE",
    "confidence": 0.87,
    "difficulty": "MEDIUM",
    "verified": True,
    "tags": ["Volcanico", "tropical", "volcanico "],
    "authenticity": "AUTHENTIC",
}


@pytest.fixture
def uploaded(object_store, jpeg_bytes):
    return object_store.upload(IMAGE_KEY, jpeg_bytes, "image/jpeg")


@pytest.fixture
def capture(store, uploaded, capture_time):
    return store.create_capture(
        uploaded,
        location={"latitude": 10.4627, "longitude": -84.7032},
        location_info={"country": "Costa Rica", "city": "La Fortuna"},
        orientation={"bearing": 270.0, "cardinalDirection": "W"},
        created_at=capture_time,
    )


class Sleeps(list):
    def __call__(self, seconds):
        self.append(seconds)


def _worker(store, object_store, vision, **kw):
    sleeps = Sleeps()
    worker = AnalysisWorker(store, object_store, vision, interval_seconds=0.05, sleep=sleeps, **kw)
    return worker, sleeps


class TestAnalyzeWithRetry:

    def test_success_first_try(self):
        sleeps = Sleeps()
        assert analyze_with_retry(FakeVision({"a": 1}), b"img", sleep=sleeps) == {"a": 1}
        assert sleeps == []

    def test_gives_up_after_all_delays(self):
        sleeps = Sleeps()
        vision = FakeVision(VisionApiError(503, "overloaded"))
        with pytest.raises(VisionApiError):
            analyze_with_retry(vision, b"img", delays=(5, 10, 20), sleep=sleeps)
        assert len(vision.calls) == 4
        assert sleeps == [5, 10, 20]

    def test_permanent_not_retried(self):
        sleeps = Sleeps()
        vision = FakeVision(MalformedResultError("No valid JSON in Gemini response"))
        with pytest.raises(MalformedResultError):
            analyze_with_retry(vision, b"img", sleep=sleeps)
        assert len(vision.calls) == 1
        assert sleeps == []

    def test_generic_exception_with_marker_is_retried(self):
        sleeps = Sleeps()
        vision = FakeVision(RuntimeError("model overloaded"), {"ok": True})
        assert analyze_with_retry(vision, b"img", delays=(1,), sleep=sleeps) == {"ok": True}
        assert sleeps == [1]


class TestProcessCapture:

    def test_end_to_end_with_one_transient_retry(self, store, object_store, capture, jpeg_bytes):
        vision = FakeVision(VisionApiError(503, "UNAVAILABLE"), RESULT)
        thumbs = ThumbnailGenerator(store, object_store)
        worker, sleeps = _worker(store, object_store, vision, thumbnails=thumbs)

        assert worker.run_once() == {Outcome.COMPLETED: 1}

        entry = store.get_queue_entry(capture.id)
        assert entry.status == STATUS_COMPLETED
        assert entry.attempts == 0
        assert sleeps == [5]
        assert len(vision.calls) == 2

        image_bytes, context = vision.calls[-1]
        assert image_bytes == jpeg_bytes
        assert context.location == {"latitude": 10.4627, "longitude": -84.7032}
        assert context.captured_at == capture.created_at

        got = store.get_capture(capture.id)
        assert got.vision_result == RESULT
        assert got.category == "NATURE"
        assert got.confidence == pytest.approx(0.87)
        assert got.difficulty == "MEDIUM"
        assert got.verified is True
        assert got.tags == ["volcanico", "tropical"]
        assert store.get_tags_for_capture(capture.id) == ["tropical", "volcanico"]
        assert got.thumbnail_url == "http://localhost:8081/thumbnails/1700000000/photo.jpg"

    def test_already_analyzed_is_completed_without_vision(self, store, object_store, uploaded):
        cap = store.create_capture(uploaded, vision_result={"category": "ART"})
        store.enqueue_analysis(cap.id)
        vision = FakeVision(RESULT)

        outcome = process_capture(cap.id, store, object_store, vision)

        assert outcome is Outcome.ALREADY_ANALYZED
        assert vision.calls == []
        assert store.get_queue_entry(cap.id).status == STATUS_COMPLETED

    def test_missing_capture(self, store, object_store, capture, sql):
        sql("UPDATE captures SET is_deleted = 1 WHERE id = ?", (capture.id,))
        vision = FakeVision(RESULT)

        assert process_capture(capture.id, store, object_store, vision) is Outcome.MISSING
        entry = store.get_queue_entry(capture.id)
        assert entry.status == STATUS_PENDING
        assert entry.attempts == 0
        assert vision.calls == []

    def test_bad_key_leaves_entry_untouched(self, store, object_store):
        cap = store.create_capture("not-a-url")
        vision = FakeVision(RESULT)

        assert process_capture(cap.id, store, object_store, vision) is Outcome.BAD_KEY
        entry = store.get_queue_entry(cap.id)
        assert (entry.status, entry.attempts) == (STATUS_PENDING, 0)
        assert vision.calls == []

    def test_download_failure_counts_as_attempt(self, store, object_store):
        cap = store.create_capture("http://localhost:8081/captures/missing.jpg")
        vision = FakeVision(RESULT)

        assert process_capture(cap.id, store, object_store, vision) is Outcome.PERMANENT_FAILURE
        assert store.get_queue_entry(cap.id).attempts == 1
        assert vision.calls == []

    def test_transient_exhaustion_keeps_attempts(self, store, object_store, capture):
        vision = FakeVision(VisionApiError(503, "overloaded"))
        sleeps = Sleeps()

        outcome = process_capture(capture.id, store, object_store, vision, sleep=sleeps)

        assert outcome is Outcome.TRANSIENT_FAILURE
        assert sleeps == [5, 10, 20]
        assert len(vision.calls) == 4
        entry = store.get_queue_entry(capture.id)
        assert (entry.status, entry.attempts) == (STATUS_PENDING, 0)
        assert store.get_capture(capture.id).vision_result is None

    def test_permanent_failure_increments_attempts(self, store, object_store, capture):
        vision = FakeVision(VisionApiError(400, "Bad Request"))
        sleeps = Sleeps()

        outcome = process_capture(capture.id, store, object_store, vision, sleep=sleeps)

        assert outcome is Outcome.PERMANENT_FAILURE
        assert sleeps == []
        entry = store.get_queue_entry(capture.id)
        assert entry.attempts == 1
        assert entry.status == STATUS_PENDING
        assert "Bad Request" in entry.error_message

    def test_thumbnail_failure_does_not_block_completion(self, store, object_store):
        url = object_store.upload("captures/2/broken.jpg", b"not an image", "image/jpeg")
        cap = store.create_capture(url)
        thumbs = ThumbnailGenerator(store, object_store)

        outcome = process_capture(cap.id, store, object_store, FakeVision(RESULT), thumbnails=thumbs)

        assert outcome is Outcome.COMPLETED
        assert store.get_queue_entry(cap.id).status == STATUS_COMPLETED
        assert store.get_capture(cap.id).thumbnail_url is None

    def test_persistence_failure_leaves_entry_untouched(self, db_path, object_store, uploaded):
        class BrokenStore(CaptureStore):
            def save_analysis(self, *args, **kwargs):
                raise PersistenceError("disk I/O error")

        store = BrokenStore(db_path)
        cap = store.create_capture(uploaded)

        assert process_capture(cap.id, store, object_store, FakeVision(RESULT)) is Outcome.PERSISTENCE_FAILURE
        entry = store.get_queue_entry(cap.id)
        assert (entry.status, entry.attempts) == (STATUS_PENDING, 0)
        assert store.get_tags_for_capture(cap.id) == []

    def test_failed_tag_write_rolls_back_whole_save(self, db_path, object_store, uploaded):
        class TagFailingStore(CaptureStore):
            def _replace_tags(self, conn, capture_id, tag_names):
                raise sqlite3.OperationalError("database is locked")

        store = TagFailingStore(db_path)
        cap = store.create_capture(uploaded)

        assert process_capture(cap.id, store, object_store, FakeVision(RESULT)) is Outcome.PERSISTENCE_FAILURE
        got = store.get_capture(cap.id)
        assert got.vision_result is None
        assert got.tags is None
        entry = store.get_queue_entry(cap.id)
        assert (entry.status, entry.attempts) == (STATUS_PENDING, 0)

        # the next tick retries the analysis instead of treating the capture as done
        healthy = CaptureStore(db_path)
        assert process_capture(cap.id, healthy, object_store, FakeVision(RESULT)) is Outcome.COMPLETED
        assert healthy.get_tags_for_capture(cap.id) == ["tropical", "volcanico"]

    def test_undecodable_row_counts_as_attempt(self, store, object_store, capture, sql):
        sql("UPDATE captures SET location = 'not json' WHERE id = ?", (capture.id,))
        vision = FakeVision(RESULT)

        assert process_capture(capture.id, store, object_store, vision) is Outcome.PERMANENT_FAILURE
        entry = store.get_queue_entry(capture.id)
        assert entry.attempts == 1
        assert entry.status == STATUS_PENDING
        assert vision.calls == []

    def test_oversized_image_thumbnail_does_not_block_completion(self, monkeypatch, store, object_store, uploaded):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100_000)
        cap = store.create_capture(uploaded)
        thumbs = ThumbnailGenerator(store, object_store)

        outcome = process_capture(cap.id, store, object_store, FakeVision(RESULT), thumbnails=thumbs)

        assert outcome is Outcome.COMPLETED
        assert store.get_queue_entry(cap.id).status == STATUS_COMPLETED
        assert store.get_capture(cap.id).thumbnail_url is None


class TestWorker:

    def test_empty_queue(self, store, object_store):
        worker, _ = _worker(store, object_store, FakeVision(RESULT))
        assert worker.run_once() == {}

    def test_exhausted_capture_is_no_longer_fetched(self, store, object_store, capture):
        vision = FakeVision(VisionApiError(400, "Bad Request"))
        worker, _ = _worker(store, object_store, vision)

        for _ in range(3):
            assert worker.run_once() == {Outcome.PERMANENT_FAILURE: 1}
        assert worker.run_once() == {}
        assert len(vision.calls) == 3
        assert store.get_queue_entry(capture.id).attempts == 3

    def test_batch_size(self, store, object_store, uploaded):
        for _ in range(3):
            store.create_capture(uploaded)
        worker, _ = _worker(store, object_store, FakeVision(RESULT), batch_size=2)
        assert worker.run_once() == {Outcome.COMPLETED: 2}
        assert worker.run_once() == {Outcome.COMPLETED: 1}

    def test_stopped_worker_skips_batch(self, store, object_store, capture):
        vision = FakeVision(RESULT)
        worker, _ = _worker(store, object_store, vision)
        worker.stop()
        worker.run_forever()
        assert vision.calls == []

    def test_run_forever_until_stopped(self, store, object_store, capture):
        worker, _ = _worker(store, object_store, FakeVision(RESULT))
        thread = threading.Thread(target=worker.run_forever, daemon=True)
        thread.start()
        try:
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if store.get_queue_entry(capture.id).status == STATUS_COMPLETED:
                    break
                time.sleep(0.02)
        finally:
            worker.stop()
            thread.join(timeout=2)
        assert not thread.is_alive()
        assert store.get_queue_entry(capture.id).status == STATUS_COMPLETED

    def test_unexpected_error_does_not_abort_batch(self, db_path, object_store, uploaded):
        class FlakyStore(CaptureStore):
            def __init__(self, path, bad_id=None):
                super().__init__(path)
                self.bad_id = bad_id

            def get_capture(self, capture_id):
                if capture_id == self.bad_id:
                    raise RuntimeError("unexpected failure")
                return super().get_capture(capture_id)

        store = FlakyStore(db_path)
        first = store.create_capture(uploaded).id
        second = store.create_capture(uploaded).id
        store.bad_id = first
        worker, _ = _worker(store, object_store, FakeVision(RESULT))

        assert worker.run_once() == {Outcome.ERROR: 1, Outcome.COMPLETED: 1}
        assert store.get_queue_entry(first).status == STATUS_PENDING
        assert store.get_queue_entry(second).status == STATUS_COMPLETED

    def test_undecodable_oldest_row_does_not_stall_queue(self, store, object_store, uploaded, sql):
        older = store.create_capture(uploaded).id
        newer = store.create_capture(uploaded).id
        sql("UPDATE captures SET location = 'not json' WHERE id = ?", (older,))
        worker, _ = _worker(store, object_store, FakeVision(RESULT), batch_size=1)

        for _ in range(3):
            assert worker.run_once() == {Outcome.PERMANENT_FAILURE: 1}
        assert worker.run_once() == {Outcome.COMPLETED: 1}
        assert store.get_queue_entry(newer).status == STATUS_COMPLETED
        assert store.get_queue_entry(older).attempts == 3
