"""
Atomic JSON persistence for checkpoint state.

Writes go to a temporary file in the target directory and are then moved
into place with ``os.replace`` so a reader never observes a half-written
checkpoint file, even if the process dies mid-write.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


def _write_replace(payload: str, target_path: Path) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=target_path.parent, prefix=f".{target_path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(payload)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, target_path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _remove_stale_temp_files(target_path: Path) -> None:
    for stale in target_path.parent.glob(f".{target_path.name}.*.tmp"):
        try:
            stale.unlink()
            logger.debug("Removed stale temp file", temp_file=str(stale))
        except OSError as e:
            logger.warning("Could not remove stale temp file", temp_file=str(stale), error=str(e))


async def atomic_json_dump(data: Any, target_path: Path, timeout: Optional[float] = 10.0) -> bool:
    """
    Serialize ``data`` to JSON and atomically replace ``target_path`` with it.

    The blocking write runs in the default executor so the event loop keeps
    serving the crawl while the checkpoint is flushed to disk.

    Returns:
        True when the file was written, False when the write timed out.

    Raises:
        ValueError: If ``data`` is not JSON serializable.
        OSError: If the file cannot be written.
    """
    target_path = Path(target_path)
    target_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        payload = json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as e:
        logger.error("Failed to serialize data to JSON", error=str(e), target=str(target_path))
        raise ValueError(f"Cannot serialize data to JSON: {e}") from e

    loop = asyncio.get_running_loop()
    try:
        await asyncio.wait_for(loop.run_in_executor(None, _write_replace, payload, target_path), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Atomic write timed out", target=str(target_path), timeout=timeout)
        _remove_stale_temp_files(target_path)
        return False

    logger.debug("Atomic write completed", target=str(target_path))
    return True


def read_json(target_path: Path, default: Any = None) -> Any:
    """Load JSON from ``target_path``; a missing or corrupt file yields ``default``."""
    target_path = Path(target_path)
    if not target_path.exists():
        return default
    try:
        with open(target_path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Could not read JSON file, using default", target=str(target_path), error=str(e))
        return default
