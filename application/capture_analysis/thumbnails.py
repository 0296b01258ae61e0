from __future__ import annotations
import io
import logging
import posixpath
from typing import Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from .config import CONFIG, MAX_THUMBNAIL_HEIGHT, MAX_THUMBNAIL_WIDTH
from .db import CaptureStore
from .storage import ObjectStore, StorageError

log = logging.getLogger("capture-analysis")

THUMBNAIL_PREFIX = "thumbnails/"


class ThumbnailError(Exception):
    pass


def make_thumbnail_jpeg(
    image_bytes: bytes,
    size: Tuple[int, int] = (MAX_THUMBNAIL_WIDTH, MAX_THUMBNAIL_HEIGHT),
    quality: int = CONFIG["THUMBNAIL_JPEG_QUALITY"],
) -> bytes:
    """Cover-crop to exactly `size` (EXIF orientation applied) and encode as JPEG."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as im:
            im = ImageOps.exif_transpose(im).convert("RGB")
            thumb = ImageOps.fit(im, size, method=Image.LANCZOS)
        buf = io.BytesIO()
        thumb.save(buf, format="JPEG", quality=quality)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        raise ThumbnailError(f"cannot build thumbnail: {e}") from e
    return buf.getvalue()


def thumbnail_key(source_key: str) -> str:
    """captures/123/uuid.png -> thumbnails/123/uuid.jpg"""
    rel = source_key
    if rel.startswith("captures/"):
        rel = rel[len("captures/"):]
    stem, _ext = posixpath.splitext(rel)
    return f"{THUMBNAIL_PREFIX}{stem or 'image'}.jpg"


class ThumbnailGenerator:
    def __init__(
        self,
        store: CaptureStore,
        object_store: ObjectStore,
        size: Tuple[int, int] = (MAX_THUMBNAIL_WIDTH, MAX_THUMBNAIL_HEIGHT),
    ):
        self.store = store
        self.object_store = object_store
        self.size = size

    def generate(self, capture_id: str, source_key: str, image_bytes: bytes) -> str:
        data = make_thumbnail_jpeg(image_bytes, self.size)
        key = thumbnail_key(source_key)
        try:
            url = self.object_store.upload(key, data, "image/jpeg")
        except StorageError as e:
            raise ThumbnailError(f"thumbnail upload failed: {e}") from e
        self.store.set_thumbnail(capture_id, url)
        log.info("Thumbnail for capture %s stored at %s", capture_id, url)
        return url
