"""Metadata record store contract plus in-memory and JSON-file implementations.

The provider only talks to the three async methods of ``MetadataStore``. Hosts
normally plug in their own database; the stores here cover tests, scripts and
small deployments. Both replace records by ``cache_key`` and hide records
whose ``expired_at`` (epoch ms) has passed.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from ..core.keys import K_CACHE_KEY, K_EXPIRED_AT

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


class MetadataStore(Protocol):
    async def async_get_by_cache_keys(self, keys: Iterable[str]) -> List[Dict[str, Any]]: ...

    async def async_insert(self, records: Iterable[Mapping[str, Any]]) -> None: ...

    async def async_exists(self, key: str) -> bool: ...


class InMemoryMetadataStore:
    """Dict-backed store keyed by cache key."""

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or now_ms
        self._records: Dict[str, Dict[str, Any]] = {}

    def _is_live(self, record: Mapping[str, Any]) -> bool:
        expired_at = record.get(K_EXPIRED_AT)
        if expired_at is None:
            return True
        try:
            return int(expired_at) > self._clock()
        except (TypeError, ValueError):
            return False

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> List[Dict[str, Any]]:
        """All stored records (live or not), in insertion order."""
        return [dict(r) for r in self._records.values()]

    async def async_get_by_cache_keys(self, keys: Iterable[str]) -> List[Dict[str, Any]]:
        found: List[Dict[str, Any]] = []
        for key in dict.fromkeys(keys):
            record = self._records.get(key)
            if record is not None and self._is_live(record):
                found.append(dict(record))
        return found

    async def async_insert(self, records: Iterable[Mapping[str, Any]]) -> None:
        batch = [dict(r) for r in records]
        for record in batch:
            if not record.get(K_CACHE_KEY):
                raise ValueError(f"Metadata record is missing a cache key: {record!r}")
        for record in batch:
            key = record[K_CACHE_KEY]
            self._records.pop(key, None)
            self._records[key] = record

    async def async_exists(self, key: str) -> bool:
        record = self._records.get(key)
        return record is not None and self._is_live(record)


class JsonFileMetadataStore(InMemoryMetadataStore):
    """In-memory store persisted to a JSON file after every insert (bounded)."""

    def __init__(self, path: Path, *, max_entries: int = 5000, clock: Optional[Clock] = None) -> None:
        super().__init__(clock=clock)
        self.path = Path(path)
        self.max_entries = max_entries
        # Guard record mutations and flushes across tasks sharing the loop
        self._lock: asyncio.Lock = asyncio.Lock()
        if self.path.exists():
            try:
                data = json.loads(self.path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                logger.warning("Ignoring unreadable metadata store %s", self.path)
                data = {}
            if isinstance(data, dict):
                self._records = {k: v for k, v in data.items() if isinstance(v, dict)}

    async def async_insert(self, records: Iterable[Mapping[str, Any]]) -> None:
        async with self._lock:
            await super().async_insert(records)
            self._flush()

    def _flush(self) -> None:
        """Prune expired and surplus records, then write the file."""
        self._records = {k: v for k, v in self._records.items() if self._is_live(v)}
        if self.max_entries > 0 and len(self._records) > self.max_entries:
            def _expiry(item: Any) -> int:
                try:
                    return int(item[1].get(K_EXPIRED_AT) or 0)
                except (TypeError, ValueError):
                    return 0
            items = sorted(self._records.items(), key=_expiry)
            drop = len(items) - self.max_entries
            for k, _ in items[:drop]:
                self._records.pop(k, None)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._records, ensure_ascii=False, indent=2), encoding="utf-8")
