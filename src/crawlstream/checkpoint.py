"""
Checkpoint codecs and persistence.

A checkpoint is an opaque string handed back with every emitted item. Three
encodings are in use:

- page cursor: a decimal page number, e.g. ``"3"``
- keyset cursor: the id of the last emitted item, e.g. ``"10245"``
- watermark: an ISO-8601 UTC timestamp, e.g. ``"2024-05-01T12:00:00Z"``

Decoders raise ``CheckpointError`` on malformed input; crawl modes catch it
and fall back to their default starting position.
"""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

import structlog

from crawlstream.errors import CheckpointError
from crawlstream.utils.atomic import atomic_json_dump, read_json

logger = structlog.get_logger(__name__)

FIRST_PAGE = 1
WATERMARK_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


# --- Page cursor ---


def encode_page(page: int) -> str:
    if page < FIRST_PAGE:
        raise CheckpointError(f"Page number must be >= {FIRST_PAGE}, got {page}")
    return str(page)


def decode_page(checkpoint: Optional[str]) -> int:
    if checkpoint is None or not checkpoint.strip():
        raise CheckpointError("Empty page checkpoint")
    text = checkpoint.strip()
    if not (text.isascii() and text.isdigit()):
        raise CheckpointError(f"Page checkpoint is not a decimal number: {checkpoint!r}")
    page = int(text)
    if page < FIRST_PAGE:
        raise CheckpointError(f"Page checkpoint must be >= {FIRST_PAGE}: {checkpoint!r}")
    return page


# --- Keyset cursor ---


def encode_keyset(last_id: str) -> str:
    if not last_id:
        raise CheckpointError("Keyset checkpoint needs a non-empty item id")
    return last_id


def decode_keyset(checkpoint: Optional[str]) -> str:
    if checkpoint is None or not checkpoint.strip():
        raise CheckpointError("Empty keyset checkpoint")
    return checkpoint.strip()


# --- Watermark ---


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def encode_watermark(value: datetime) -> str:
    return as_utc(value).strftime(WATERMARK_FORMAT)


def decode_watermark(checkpoint: Optional[str]) -> datetime:
    if checkpoint is None or not checkpoint.strip():
        raise CheckpointError("Empty watermark checkpoint")
    text = checkpoint.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise CheckpointError(f"Watermark checkpoint is not an ISO-8601 timestamp: {checkpoint!r}") from e
    return as_utc(parsed)


# --- Persistence ---


class CheckpointStore:
    """
    Keeps the latest checkpoint per crawl key in a JSON file.

    The whole mapping is rewritten atomically on every save, so the file on
    disk always holds a consistent snapshot.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        loaded = read_json(self.path, default={})
        if not isinstance(loaded, dict):
            logger.warning("Checkpoint store is not a JSON object, starting empty", path=str(self.path))
            loaded = {}
        self._checkpoints: Dict[str, str] = {str(k): str(v) for k, v in loaded.items() if v is not None}

    def load(self, key: str) -> Optional[str]:
        return self._checkpoints.get(key)

    def all(self) -> Dict[str, str]:
        return dict(self._checkpoints)

    async def save(self, key: str, checkpoint: str) -> None:
        self._checkpoints[key] = checkpoint
        if not await atomic_json_dump(self._checkpoints, self.path):
            raise OSError(f"Timed out persisting checkpoint to {self.path}")

    async def clear(self, key: str) -> None:
        if self._checkpoints.pop(key, None) is not None:
            await atomic_json_dump(self._checkpoints, self.path)
