"""Gemini vision client (REST generateContent) and result extraction."""
from __future__ import annotations
import base64
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import requests

from .config import CONFIG, GEMINI_API_KEY, GEMINI_ENDPOINT, GEMINI_MODEL, VISION_TIMEOUT_SECONDS
from .prompt import AnalysisContext, build_context_block, build_prompt, context_lines_for

log = logging.getLogger("capture-analysis")

TRANSIENT_MARKERS = ("503", "overloaded", "UNAVAILABLE")


class ErrorKind(enum.Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


def classify_error_text(text: str) -> ErrorKind:
    if any(marker in text for marker in TRANSIENT_MARKERS):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT


class VisionError(Exception):
    kind = ErrorKind.PERMANENT

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind is ErrorKind.TRANSIENT


class VisionApiError(VisionError):
    """Non-2xx answer from the vision endpoint."""

    def __init__(self, status: int, body: str):
        self.status = status
        self.body = body
        message = f"Gemini API error ({status}): {body}"
        kind = ErrorKind.TRANSIENT if status == 503 else classify_error_text(body)
        super().__init__(message, kind)


class EmptyResponseError(VisionError):
    pass


class MalformedResultError(VisionError):
    pass


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, VisionError):
        return exc.transient
    return classify_error_text(str(exc)) is ErrorKind.TRANSIENT


def parse_result_text(text: str) -> Dict[str, Any]:
    """Parse the JSON object embedded in free model text (first '{' .. last '}')."""
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end == -1 or start >= end:
        raise MalformedResultError("No valid JSON in Gemini response")
    try:
        data = json.loads(text[start : end + 1])
    except ValueError as e:
        raise MalformedResultError(f"Failed to parse JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedResultError("Gemini JSON result is not an object")
    return data


def first_candidate_text(payload: Any) -> str:
    candidates = payload.get("candidates") if isinstance(payload, dict) else None
    if not candidates:
        raise EmptyResponseError("No candidates returned from Gemini")
    content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not parts:
        raise EmptyResponseError("No parts in candidate response")
    text = parts[0].get("text") if isinstance(parts[0], dict) else None
    if not isinstance(text, str):
        raise EmptyResponseError("First candidate part has no text")
    return text


class VisionClient:
    def __init__(
        self,
        api_key: str = GEMINI_API_KEY,
        model_name: str = GEMINI_MODEL,
        endpoint: str = GEMINI_ENDPOINT,
        timeout: float = VISION_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is empty.")
        self.api_key = api_key
        self.model_name = model_name
        self.base = endpoint.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    @property
    def url(self) -> str:
        return f"{self.base}/{self.model_name}:generateContent"

    def build_request(self, image_bytes: bytes, context: Optional[AnalysisContext] = None) -> Dict[str, Any]:
        prompt_text = build_prompt(build_context_block(context_lines_for(context)))
        return {
            "contents": [
                {
                    "parts": [
                        {"text": prompt_text},
                        {
                            "inlineData": {
                                "mimeType": CONFIG["VISION_MIME_TYPE"],
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            }
                        },
                    ]
                }
            ]
        }

    def analyze(self, image_bytes: bytes, context: Optional[AnalysisContext] = None) -> Dict[str, Any]:
        body = self.build_request(image_bytes, context)
        log.info("Sending request to Gemini API: %s", self.url)
        try:
            r = self.session.post(
                self.url, params={"key": self.api_key}, json=body, timeout=self.timeout
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            raise VisionError(f"Gemini API unavailable: {e}", ErrorKind.TRANSIENT) from e
        except requests.RequestException as e:
            raise VisionError(f"Gemini API request failed: {e}") from e

        log.info("Gemini API response status: %s", r.status_code)
        if not 200 <= r.status_code < 300:
            log.error("Gemini API error response: %s", r.text)
            raise VisionApiError(r.status_code, r.text)

        try:
            payload = r.json()
        except ValueError as e:
            raise EmptyResponseError(f"Gemini response is not JSON: {e}") from e

        text = first_candidate_text(payload)
        log.debug("Gemini raw response text: %s", text)
        return parse_result_text(text)


@dataclass
class AnalysisMetadata:
    category: str = "UNKNOWN"
    confidence: float = 0.0
    difficulty: str = "EASY"
    verified: bool = False
    tags: List[str] = field(default_factory=list)


def normalize_tags(values: Iterable[Any]) -> List[str]:
    out: List[str] = []
    for v in values:
        if not isinstance(v, str):
            continue
        tag = v.strip().lower()
        if tag and tag not in out:
            out.append(tag)
    return out


def extract_metadata(result: Dict[str, Any]) -> AnalysisMetadata:
    """Typed fields from a vision result; missing or wrong-typed values get defaults."""
    meta = AnalysisMetadata()
    if not isinstance(result, dict):
        return meta

    category = result.get("category")
    if isinstance(category, str):
        meta.category = category

    confidence = result.get("confidence")
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool):
        meta.confidence = float(confidence)

    difficulty = result.get("difficulty")
    if isinstance(difficulty, str):
        meta.difficulty = difficulty

    verified = result.get("verified")
    if isinstance(verified, bool):
        meta.verified = verified

    tags = result.get("tags")
    if isinstance(tags, list):
        meta.tags = normalize_tags(tags)
    return meta
