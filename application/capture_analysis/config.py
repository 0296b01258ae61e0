from __future__ import annotations
import os
import pathlib


def _env_bool(name: str, default: str = "true") -> bool:
    return os.getenv(name, default).strip().lower() == "true"


CONFIG = {
    "ANALYSIS_BATCH_SIZE": 10,
    "ANALYSIS_MAX_ATTEMPTS": 3,
    "VISION_RETRY_DELAYS": (5, 10, 20),  # seconds, one per inline retry
    "VISION_MIME_TYPE": "image/jpeg",
    "THUMBNAIL_JPEG_QUALITY": 85,
    "TAG_LANGUAGE": "Spanish",
}


ANALYSIS_WORKER_ENABLED = _env_bool("ANALYSIS_WORKER_ENABLED")
ANALYSIS_WORKER_INTERVAL_SECONDS = int(os.getenv("ANALYSIS_WORKER_INTERVAL_SECONDS", "30"))
THUMBNAIL_GENERATION_ENABLED = _env_bool("THUMBNAIL_GENERATION_ENABLED")
MAX_THUMBNAIL_WIDTH = int(os.getenv("MAX_THUMBNAIL_WIDTH", "200"))
MAX_THUMBNAIL_HEIGHT = int(os.getenv("MAX_THUMBNAIL_HEIGHT", "200"))

GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_ENDPOINT = os.getenv("GEMINI_ENDPOINT", "https://generativelanguage.googleapis.com/v1")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "models/gemini-2.5-flash")
VISION_TIMEOUT_SECONDS = float(os.getenv("VISION_TIMEOUT_SECONDS", "90"))

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "s3")  # "s3" or "local"
AWS_REGION = os.getenv("AWS_REGION", "us-east-1")
AWS_ACCESS_KEY_ID = os.getenv("AWS_ACCESS_KEY_ID", "")
AWS_SECRET_ACCESS_KEY = os.getenv("AWS_SECRET_ACCESS_KEY", "")
S3_BUCKET = os.getenv("S3_BUCKET", "")
S3_ENDPOINT = os.getenv("S3_ENDPOINT") or None  # MinIO / LocalStack

APP_DATA_DIR = os.getenv("APP_DATA_DIR", str(pathlib.Path(__file__).parent.resolve()))
UPLOAD_DIR = pathlib.Path(os.getenv("UPLOAD_DIR", str(pathlib.Path(APP_DATA_DIR) / "uploads")))
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8081")

DB_DEFAULT = os.getenv("DB_PATH", str(pathlib.Path(APP_DATA_DIR) / "captures.db"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
