"""Crash-safe file contracts shared by the coordinator, workers and readers."""

from __future__ import annotations

import json
import logging
import os
import secrets
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"
STALE_TEMP_MAX_AGE_SECONDS = 60 * 60

# Fields that survive every status overwrite once set.
_PRESERVED_STATUS_FIELDS: tuple[str, ...] = ("role", "queuedAt", "startedAt", "retryAt")


def _temp_path_for(path: Path) -> Path:
    return path.with_name(f"{path.name}.{os.getpid()}.{secrets.token_hex(4)}{TEMP_SUFFIX}")


def write_text_atomic(path: Path, content: str) -> None:
    """Write text through a per-process temp file and rename it over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = _temp_path_for(path)
    try:
        tmp_path.write_text(str(content), "utf-8")
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, payload: dict[str, Any]) -> None:
    """Persist a JSON object so concurrent readers never see a partial document."""

    write_text_atomic(path, json.dumps(payload, ensure_ascii=False, indent=2))


def read_json_if_exists(path: Path) -> dict[str, Any] | None:
    """Load a JSON object, or ``None`` when it is absent, unreadable or corrupt."""

    try:
        raw = path.read_text("utf-8")
    except OSError:
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring unparseable JSON at %s", path)
        return None
    if not isinstance(payload, dict):
        return None
    return payload


def read_text_if_exists(path: Path) -> str:
    """Read a text file, tolerating absence and undecodable bytes."""

    try:
        return path.read_bytes().decode("utf-8", errors="replace")
    except OSError:
        return ""


def merge_status(path: Path, partial: dict[str, Any]) -> dict[str, Any]:
    """Overwrite a status record, keeping long-lived fields the update omits."""

    existing = read_json_if_exists(path) or {}
    preserved = {
        key: existing[key]
        for key in _PRESERVED_STATUS_FIELDS
        if existing.get(key) is not None and partial.get(key) is None
    }
    merged = {**partial, **preserved}
    write_json_atomic(path, merged)
    return merged


def cleanup_stale_temp_files(
    directory: Path,
    *,
    max_age_seconds: float = STALE_TEMP_MAX_AGE_SECONDS,
    now: float | None = None,
) -> int:
    """Remove temp files left behind by crashed writers. Returns number removed."""

    if not directory.is_dir():
        return 0
    current = time.time() if now is None else now
    removed = 0
    try:
        candidates = list(directory.glob(f"*{TEMP_SUFFIX}"))
    except OSError:
        return 0
    for candidate in candidates:
        try:
            if current - candidate.stat().st_mtime > max_age_seconds:
                candidate.unlink()
                removed += 1
        except OSError:
            continue
    if removed:
        logger.debug("Cleaned %d stale temp file(s) from %s", removed, directory)
    return removed
