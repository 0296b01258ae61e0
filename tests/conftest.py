"""Shared fixtures: a temporary SQLite store, a local object store and fakes
for the vision endpoint."""

import io
import sqlite3
from datetime import datetime, timezone

import pytest
from PIL import Image

from capture_analysis.db import CaptureStore, ensure_schema
from capture_analysis.storage import LocalObjectStore


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=""):
        self.status_code = status_code
        self._json = json_data
        self.text = text

    def json(self):
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json


class FakeSession:
    """Stands in for requests.Session; replays queued responses or exceptions."""

    def __init__(self, *responses):
        self.headers = {}
        self.responses = list(responses)
        self.calls = []

    def post(self, url, params=None, json=None, timeout=None):
        self.calls.append({"url": url, "params": params, "json": json, "timeout": timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeVision:
    """Vision client double; each call consumes the next result or raises it."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []

    def analyze(self, image_bytes, context=None):
        self.calls.append((image_bytes, context))
        item = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(item, Exception):
            raise item
        return item


def gemini_payload(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "captures.db")
    ensure_schema(path)
    return path


@pytest.fixture
def store(db_path):
    return CaptureStore(db_path)


@pytest.fixture
def object_store(tmp_path):
    return LocalObjectStore(tmp_path / "objects", "http://localhost:8081")


@pytest.fixture
def jpeg_bytes():
    img = Image.new("RGB", (640, 480), (30, 120, 200))
    buf = io.BytesIO()
    img.save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def capture_time():
    return datetime(2024, 3, 20, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def sql(db_path):
    """Run raw SQL against the test database (for states the store never writes)."""

    def run(statement, params=()):
        conn = sqlite3.connect(db_path)
        try:
            rows = conn.execute(statement, params).fetchall()
            conn.commit()
            return rows
        finally:
            conn.close()

    return run
