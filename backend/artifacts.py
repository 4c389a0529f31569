"""
On-disk cache of derived artifacts (HLS bundles and thumbnails).

Each (did, cid, kind) key owns one temporary directory under the store
root. The directory is created on first lookup, filled by a derivation
worker and removed only when the sweeper evicts the entry.

Locking: the table lock is held only to insert or remove entries. Each
entry has its own lock for its mutable fields, so unrelated keys never
wait on each other.
"""

import asyncio
import re
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from errors import DerivationError


class ArtifactKind(str, Enum):
    PLAYLIST = "hls"
    THUMBNAIL = "thumb"


# Name of the file whose presence marks a finished derivation
OUTPUT_NAMES: Dict[ArtifactKind, str] = {
    ArtifactKind.PLAYLIST: "playlist.m3u8",
    ArtifactKind.THUMBNAIL: "thumbnail.jpg",
}


@dataclass(frozen=True)
class ArtifactKey:
    did: str
    cid: str
    kind: ArtifactKind

    def prefix(self) -> str:
        """Filesystem-safe prefix for the backing directory name."""
        raw = f"{self.kind.value}_{self.did}_{self.cid}_"
        return re.sub(r"[^A-Za-z0-9_.-]", "_", raw)


@dataclass(eq=False)
class ArtifactEntry:
    key: ArtifactKey
    directory: Path
    last_accessed: float = field(default_factory=time.monotonic)
    deriving: bool = False
    error: Optional[DerivationError] = None
    leases: int = 0
    evicted: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def output_path(self) -> Path:
        return self.directory / OUTPUT_NAMES[self.key.kind]

    def is_ready(self) -> bool:
        return self.output_path.is_file()

    def touch(self) -> None:
        self.last_accessed = time.monotonic()


class ArtifactStore:
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self._entries: Dict[ArtifactKey, ArtifactEntry] = {}
        self._table_lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: ArtifactKey) -> bool:
        return key in self._entries

    def _allocate(self, key: ArtifactKey) -> Path:
        self.root.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=key.prefix(), dir=self.root))

    async def get_or_create(self, key: ArtifactKey) -> ArtifactEntry:
        """
        Return the entry for *key*, refreshing its access time.

        A missing entry is created with an empty backing directory. Concurrent
        callers for the same missing key share one allocation.
        """
        while True:
            entry = self._entries.get(key)
            if entry is None:
                async with self._table_lock:
                    entry = self._entries.get(key)
                    if entry is None:
                        directory = await asyncio.to_thread(self._allocate, key)
                        entry = ArtifactEntry(key=key, directory=directory)
                        self._entries[key] = entry
                        print(f"[Artifacts] Allocated {directory}")
            async with entry.lock:
                # Lost a race with the sweeper; look the key up again
                if entry.evicted:
                    continue
                entry.touch()
            return entry

    async def mark_derivation_start(self, entry: ArtifactEntry) -> bool:
        """Take the single-flight gate. False when a derivation is already running."""
        async with entry.lock:
            if entry.deriving:
                return False
            entry.deriving = True
            entry.error = None
            entry.done = asyncio.Event()
            return True

    async def mark_derivation_end(
        self, entry: ArtifactEntry, error: Optional[DerivationError]
    ) -> None:
        async with entry.lock:
            entry.deriving = False
            entry.error = error
            entry.touch()
            entry.done.set()

    async def wait_for_derivation(self, entry: ArtifactEntry, timeout: float) -> bool:
        """Wait up to *timeout* seconds for a running derivation. True if it finished."""
        async with entry.lock:
            if not entry.deriving:
                return True
            done = entry.done
        try:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def lease(self, entry: ArtifactEntry) -> None:
        """Mark *entry* as being served so the sweeper leaves it alone."""
        async with entry.lock:
            entry.leases += 1
            entry.touch()

    async def release(self, entry: ArtifactEntry) -> None:
        async with entry.lock:
            entry.leases = max(0, entry.leases - 1)

    async def sweep(self, ttl: float, now: Optional[float] = None) -> int:
        """
        Evict entries idle for longer than *ttl* seconds and delete their
        directories. Entries that are deriving or being served are skipped.
        """
        now = time.monotonic() if now is None else now
        evicted: List[ArtifactEntry] = []
        async with self._table_lock:
            for key, entry in list(self._entries.items()):
                async with entry.lock:
                    if entry.deriving or entry.leases > 0:
                        continue
                    if now - entry.last_accessed <= ttl:
                        continue
                    entry.evicted = True
                    del self._entries[key]
                    evicted.append(entry)
        # Unlinked from the table already; lookups must not wait on disk I/O
        for entry in evicted:
            await asyncio.to_thread(shutil.rmtree, entry.directory, ignore_errors=True)
            print(f"[Artifacts] Evicted {entry.key.kind.value} {entry.key.did}/{entry.key.cid}")
        return len(evicted)
