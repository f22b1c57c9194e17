"""
Snapshot Cache

One JSON file slot holding {timestamp, data: {builds, releases}}.

- get() returns the snapshot only while now - timestamp < TTL, else None
- put() overwrites the slot unconditionally, stamping the current time
- an unreadable or corrupt file is a cache miss, never an error
- file I/O runs in a worker thread so the event loop keeps serving
"""

import asyncio
import json
import logging
import tempfile
import time
from pathlib import Path
from typing import Callable, List, Optional

from .config import CACHE_FILE, CACHE_TTL_SECONDS
from .models import CacheSnapshot, RunRecord

logger = logging.getLogger("snapshot_cache")


class SnapshotCache:
    def __init__(
        self,
        path: Path = CACHE_FILE,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _read(self) -> Optional[CacheSnapshot]:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text())
        except (OSError, ValueError) as e:
            logger.warning(f"Cache read failed: {e}")
            return None

        if not isinstance(raw, dict) or not isinstance(raw.get("data"), dict):
            logger.warning("Cache file has unexpected layout; ignoring")
            return None
        try:
            return CacheSnapshot.from_dict(raw)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Cache read failed: {e}")
            return None

    def _write(self, snapshot: CacheSnapshot) -> None:
        # one temp file per write; concurrent puts must not share it
        with tempfile.NamedTemporaryFile(
            "w",
            dir=self.path.parent,
            prefix=self.path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as f:
            json.dump(snapshot.to_dict(), f, indent=2)
            tmp_path = Path(f.name)
        try:
            tmp_path.replace(self.path)
        except OSError:
            tmp_path.unlink(missing_ok=True)
            raise

    def is_fresh(self, snapshot: CacheSnapshot) -> bool:
        return self._clock() - snapshot.timestamp < self.ttl_seconds

    async def get(self) -> Optional[CacheSnapshot]:
        """The stored snapshot if still within TTL, otherwise None."""
        snapshot = await asyncio.to_thread(self._read)
        if snapshot is None:
            return None
        if not self.is_fresh(snapshot):
            logger.debug("Cache expired")
            return None
        return snapshot

    async def put(
        self,
        builds: List[RunRecord],
        releases: List[RunRecord],
    ) -> CacheSnapshot:
        """Overwrite the slot with a fresh snapshot. Write failures are logged only."""
        snapshot = CacheSnapshot(timestamp=self._clock(), builds=builds, releases=releases)
        try:
            await asyncio.to_thread(self._write, snapshot)
            logger.debug(f"Cache updated: {len(builds)} builds, {len(releases)} releases")
        except OSError as e:
            logger.warning(f"Cache save failed: {e}")
        return snapshot
