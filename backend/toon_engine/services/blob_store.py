from __future__ import annotations

import base64
import binascii
import logging
import re
import threading
from pathlib import Path
from typing import Iterable, Protocol

from toon_engine.core.errors import InvalidInputError

logger = logging.getLogger(__name__)

_DATA_URI_RE = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)

_MAGIC: tuple[tuple[bytes, str], ...] = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


class BlobStoreError(RuntimeError):
    pass


class BlobNotFoundError(BlobStoreError):
    pass


class BlobStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> None: ...

    def get(self, key: str) -> bytes | None: ...

    def delete(self, keys: Iterable[str]) -> None: ...


class InMemoryBlobStore:
    def __init__(self) -> None:
        self._items: dict[str, tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, data: bytes, content_type: str) -> None:
        with self._lock:
            self._items[key] = (bytes(data), content_type)

    def get(self, key: str) -> bytes | None:
        with self._lock:
            item = self._items.get(key)
        return item[0] if item else None

    def delete(self, keys: Iterable[str]) -> None:
        with self._lock:
            for key in keys:
                self._items.pop(key, None)

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._items)


class LocalBlobStore:
    """Filesystem-backed store; keys map to paths below ``root``."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        key = (key or "").strip().lstrip("/")
        if not key:
            raise BlobStoreError("empty blob key")
        path = (self._root / key).resolve()
        if self._root not in path.parents:
            raise BlobStoreError(f"blob key escapes store root: {key}")
        return path

    def put(self, key: str, data: bytes, content_type: str) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(path)

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    def delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._path(key).unlink(missing_ok=True)


def sniff_image_mime(data: bytes, default: str = "image/jpeg") -> str:
    head = bytes(data[:12])
    for magic, mime in _MAGIC:
        if head.startswith(magic):
            return mime
    if head[:4] == b"RIFF" and head[8:12] == b"WEBP":
        return "image/webp"
    return default


def parse_data_uri(raw: object, *, index: int, max_base64_length: int) -> tuple[bytes, str]:
    if not isinstance(raw, str):
        raise InvalidInputError(f"Image {index} is not a string")
    match = _DATA_URI_RE.match(raw.strip())
    if not match:
        raise InvalidInputError(f"Image {index} is not a valid base64 data URI")
    payload = match.group(2)
    if len(payload) > max_base64_length:
        raise InvalidInputError(f"Image {index} is too large")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidInputError(f"Image {index} is not valid base64") from None
    if not data:
        raise InvalidInputError(f"Image {index} is empty")
    return data, f"image/{match.group(1).lower()}"


def input_key(job_id: str, index: int) -> str:
    return f"job-inputs/{job_id}/{index}.bin"


def result_key(image_id: str) -> str:
    return f"generated/{image_id}.png"


def store_input_image(store: BlobStore, job_id: str, index: int, data: bytes, mime_type: str) -> str:
    key = input_key(job_id, index)
    store.put(key, data, mime_type)
    return key


def load_input_image(store: BlobStore, key: str) -> tuple[bytes, str]:
    data = store.get(key)
    if data is None:
        raise BlobNotFoundError(f"blob not found: {key}")
    return data, sniff_image_mime(data)


def cleanup_input_images(store: BlobStore, keys: Iterable[str]) -> None:
    keys = [k for k in keys if k]
    if not keys:
        return
    try:
        store.delete(keys)
    except Exception:
        logger.exception("blob.cleanup.error keys=%s", len(keys))
