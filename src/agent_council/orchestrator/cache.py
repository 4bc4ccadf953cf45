"""Prompt-fingerprint cache pointing at previously completed jobs."""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from agent_council.orchestrator.contracts import read_json_if_exists, write_json_atomic
from agent_council.orchestrator.models import UsageError, parse_iso, utc_now_iso

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 24 * 60 * 60
PREVIEW_MEMBERS = 2
PREVIEW_CHARS = 200
CACHE_KEY_LENGTH = 16

_VALID_CACHE_KEY = re.compile(r"^[0-9a-f]{16}$")


def cache_key(prompt: str, scenario: str | None) -> str:
    """First 16 hex chars of sha256 over ``"<scenario or default>:<prompt>"``."""

    content = f"{scenario or 'default'}:{prompt}"
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:CACHE_KEY_LENGTH]


def validate_cache_key(key: str) -> str:
    """Reject anything that is not a cache fingerprint."""

    if not _VALID_CACHE_KEY.match(key or ""):
        raise UsageError(f"Invalid cache key: {key}")
    return key


@dataclass(slots=True)
class CachePreview:
    member: str
    role: str | None
    output_preview: str


@dataclass(slots=True)
class CacheEntry:
    key: str
    timestamp: str
    prompt: str
    scenario: str | None
    job_dir: str
    member_count: int
    preview: list[CachePreview] = field(default_factory=list)
    age_minutes: int = 0
    is_expired: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "timestamp": self.timestamp,
            "prompt": self.prompt,
            "scenario": self.scenario,
            "jobDir": self.job_dir,
            "memberCount": self.member_count,
            "age": self.age_minutes,
            "isExpired": self.is_expired,
        }


class ResultCache:
    """One JSON file per fingerprint; stale entries are dropped on read."""

    def __init__(
        self,
        cache_dir: Path,
        *,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        watched_paths: Iterable[Path] = (),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = cache_dir
        self.ttl_seconds = ttl_seconds
        self.watched_paths = tuple(watched_paths)
        self._clock = clock

    def path_for(self, key: str) -> Path:
        return self.cache_dir / f"{key}.json"

    def read(self, key: str) -> CacheEntry | None:
        path = self.path_for(key)
        data = read_json_if_exists(path)
        if data is None:
            return None
        entry = self._to_entry(key, data)
        if entry is None:
            return None

        created = parse_iso(entry.timestamp)
        created_epoch = created.timestamp() if created is not None else 0.0
        if self._clock() - created_epoch > self.ttl_seconds:
            logger.debug("Cache entry %s expired", key)
            self._discard(path)
            return None
        if self._watched_mtime() > created_epoch:
            logger.debug("Cache entry %s invalidated by newer sources", key)
            self._discard(path)
            return None
        return entry

    def write(
        self,
        key: str,
        *,
        job_dir: Path,
        prompt: str,
        scenario: str | None,
        members: list[dict[str, Any]],
    ) -> CacheEntry:
        """Record a finished job; ``members`` are result dicts with member/role/output."""

        payload = {
            "timestamp": utc_now_iso(),
            "prompt": prompt,
            "scenario": scenario,
            "jobDir": str(job_dir),
            "memberCount": len(members),
            "preview": [
                {
                    "member": member.get("member"),
                    "role": member.get("role"),
                    "outputPreview": str(member.get("output") or "")[:PREVIEW_CHARS],
                }
                for member in members[:PREVIEW_MEMBERS]
            ],
        }
        write_json_atomic(self.path_for(key), payload)
        logger.debug("Cache written for %s -> %s", key, job_dir)
        return CacheEntry(
            key=key,
            timestamp=payload["timestamp"],
            prompt=prompt,
            scenario=scenario,
            job_dir=str(job_dir),
            member_count=len(members),
            preview=[
                CachePreview(
                    member=str(item["member"] or ""),
                    role=item["role"],
                    output_preview=item["outputPreview"],
                )
                for item in payload["preview"]
            ],
        )

    def list_entries(self) -> list[CacheEntry]:
        """All readable entries, newest first, annotated with age and expiry."""

        if not self.cache_dir.is_dir():
            return []
        now = self._clock()
        dated: list[tuple[float, CacheEntry]] = []
        for path in self.cache_dir.glob("*.json"):
            data = read_json_if_exists(path)
            entry = self._to_entry(path.stem, data) if data is not None else None
            if entry is None:
                continue
            created = parse_iso(entry.timestamp)
            if created is None:
                continue
            age_seconds = now - created.timestamp()
            entry.age_minutes = round(age_seconds / 60)
            entry.is_expired = age_seconds > self.ttl_seconds
            dated.append((created.timestamp(), entry))
        dated.sort(key=lambda item: item[0], reverse=True)
        return [entry for _, entry in dated]

    def clear(self, key: str | None = None) -> int:
        if not self.cache_dir.is_dir():
            return 0
        targets = [self.path_for(key)] if key else list(self.cache_dir.glob("*.json"))
        cleared = 0
        for path in targets:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            cleared += 1
        return cleared

    def _watched_mtime(self) -> float:
        latest = 0.0
        for path in self.watched_paths:
            try:
                latest = max(latest, path.stat().st_mtime)
            except OSError:
                continue
        return latest

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except OSError as error:
            logger.debug("Could not remove cache entry %s: %s", path, error)

    @staticmethod
    def _to_entry(key: str, data: dict[str, Any]) -> CacheEntry | None:
        timestamp = data.get("timestamp")
        job_dir = data.get("jobDir")
        if not isinstance(timestamp, str) or not isinstance(job_dir, str):
            return None
        member_count = data.get("memberCount")
        raw_preview = data.get("preview")
        preview = [
            CachePreview(
                member=str(item.get("member") or ""),
                role=item.get("role"),
                output_preview=str(item.get("outputPreview") or ""),
            )
            for item in (raw_preview if isinstance(raw_preview, list) else [])
            if isinstance(item, dict)
        ]
        return CacheEntry(
            key=key,
            timestamp=timestamp,
            prompt=str(data.get("prompt") or ""),
            scenario=data.get("scenario") if isinstance(data.get("scenario"), str) else None,
            job_dir=job_dir,
            member_count=member_count if isinstance(member_count, int) else 0,
            preview=preview,
        )
