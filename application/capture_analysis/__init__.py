from .config import CONFIG, DB_DEFAULT, GEMINI_MODEL, UPLOAD_DIR
from .solar import SolarPosition, sun_position, sun_direction
from .prompt import AnalysisContext, build_context_lines, build_context_block, build_prompt
from .vlm import (
    VisionClient, VisionError, VisionApiError, EmptyResponseError, MalformedResultError,
    ErrorKind, AnalysisMetadata, classify_error_text, is_transient, parse_result_text,
    extract_metadata, normalize_tags,
)
from .db import CaptureRecord, CaptureStore, QueueEntry, PersistenceError, CorruptRecordError, ensure_schema
from .storage import (
    ObjectStore, S3ObjectStore, LocalObjectStore, StorageError, KeyExtractionError,
    DownloadError, extract_object_key, create_object_store,
)
from .thumbnails import ThumbnailGenerator, ThumbnailError, make_thumbnail_jpeg, thumbnail_key
from .pipeline import Outcome, analyze_with_retry, process_capture
from .worker import AnalysisWorker


__all__ = [
"CONFIG","DB_DEFAULT","GEMINI_MODEL","UPLOAD_DIR",
"SolarPosition","sun_position","sun_direction",
"AnalysisContext","build_context_lines","build_context_block","build_prompt",
"VisionClient","VisionError","VisionApiError","EmptyResponseError","MalformedResultError",
"ErrorKind","AnalysisMetadata","classify_error_text","is_transient","parse_result_text",
"extract_metadata","normalize_tags",
"CaptureRecord","CaptureStore","QueueEntry","PersistenceError","CorruptRecordError","ensure_schema",
"ObjectStore","S3ObjectStore","LocalObjectStore","StorageError","KeyExtractionError",
"DownloadError","extract_object_key","create_object_store",
"ThumbnailGenerator","ThumbnailError","make_thumbnail_jpeg","thumbnail_key",
"Outcome","analyze_with_retry","process_capture","AnalysisWorker",
]
