"""Tests for the derived-artifact store."""
import asyncio
import shutil
import time

import pytest

import artifacts
from artifacts import ArtifactKey, ArtifactKind, ArtifactStore
from errors import DerivationError

KEY = ArtifactKey("did:plc:abc", "bafyvideo", ArtifactKind.PLAYLIST)


class TestGetOrCreate:
    @pytest.mark.asyncio
    async def test_creates_empty_directory(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)

        assert entry.directory.is_dir()
        assert list(entry.directory.iterdir()) == []
        assert entry.directory.parent == store.root
        assert not entry.is_ready()
        assert KEY in store

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_allocation(self, store: ArtifactStore) -> None:
        entries = await asyncio.gather(*(store.get_or_create(KEY) for _ in range(20)))

        assert len({e.directory for e in entries}) == 1
        assert len({id(e) for e in entries}) == 1
        assert len(list(store.root.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_kinds_get_separate_slots(self, store: ArtifactStore) -> None:
        playlist = await store.get_or_create(KEY)
        thumb = await store.get_or_create(
            ArtifactKey(KEY.did, KEY.cid, ArtifactKind.THUMBNAIL)
        )

        assert playlist.directory != thumb.directory
        assert thumb.output_path.name == "thumbnail.jpg"
        assert playlist.output_path.name == "playlist.m3u8"

    @pytest.mark.asyncio
    async def test_lookup_refreshes_access_time(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)
        entry.last_accessed -= 1000
        stale = entry.last_accessed

        again = await store.get_or_create(KEY)

        assert again is entry
        assert entry.last_accessed > stale

    def test_directory_prefix_is_filesystem_safe(self) -> None:
        assert KEY.prefix() == "hls_did_plc_abc_bafyvideo_"


class TestSingleFlightGate:
    @pytest.mark.asyncio
    async def test_second_start_is_refused(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)

        assert await store.mark_derivation_start(entry) is True
        assert await store.mark_derivation_start(entry) is False
        assert entry.deriving

    @pytest.mark.asyncio
    async def test_end_records_error_and_reopens_gate(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)
        await store.mark_derivation_start(entry)

        await store.mark_derivation_end(entry, DerivationError("boom"))

        assert not entry.deriving
        assert str(entry.error) == "boom"
        assert await store.mark_derivation_start(entry) is True
        assert entry.error is None

    @pytest.mark.asyncio
    async def test_waiter_wakes_when_derivation_ends(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)
        await store.mark_derivation_start(entry)

        waiter = asyncio.create_task(store.wait_for_derivation(entry, timeout=5))
        await asyncio.sleep(0)
        await store.mark_derivation_end(entry, None)

        assert await waiter is True

    @pytest.mark.asyncio
    async def test_waiter_times_out(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)
        await store.mark_derivation_start(entry)

        assert await store.wait_for_derivation(entry, timeout=0.01) is False


class TestSweep:
    @pytest.mark.asyncio
    async def test_evicts_idle_entry_and_deletes_directory(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)
        (entry.directory / "playlist.m3u8").write_text("#EXTM3U\n")

        evicted = await store.sweep(ttl=60, now=time.monotonic() + 61)

        assert evicted == 1
        assert KEY not in store
        assert not entry.directory.exists()
        assert entry.evicted

    @pytest.mark.asyncio
    async def test_keeps_recent_entry(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)

        assert await store.sweep(ttl=60) == 0
        assert entry.directory.exists()

    @pytest.mark.asyncio
    async def test_skips_entry_being_derived(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)
        await store.mark_derivation_start(entry)

        assert await store.sweep(ttl=60, now=time.monotonic() + 3600) == 0
        assert entry.directory.exists()

    @pytest.mark.asyncio
    async def test_skips_entry_being_served(self, store: ArtifactStore) -> None:
        entry = await store.get_or_create(KEY)
        await store.lease(entry)

        assert await store.sweep(ttl=60, now=time.monotonic() + 3600) == 0

        await store.release(entry)
        assert await store.sweep(ttl=60, now=time.monotonic() + 3600) == 1

    @pytest.mark.asyncio
    async def test_lookup_after_eviction_allocates_fresh_storage(self, store: ArtifactStore) -> None:
        first = await store.get_or_create(KEY)
        await store.sweep(ttl=0, now=time.monotonic() + 1)

        second = await store.get_or_create(KEY)

        assert second is not first
        assert second.directory.is_dir()
        assert second.directory != first.directory

    @pytest.mark.asyncio
    async def test_lookup_racing_eviction_gets_fresh_entry(self, store: ArtifactStore) -> None:
        stale = await store.get_or_create(KEY)

        # Hold the entry lock so the sweeper and a lookup both queue on it,
        # sweeper first. The lookup then wakes up holding an evicted entry.
        async with stale.lock:
            sweeper = asyncio.create_task(store.sweep(ttl=0, now=time.monotonic() + 1))
            await asyncio.sleep(0)
            lookup = asyncio.create_task(store.get_or_create(KEY))
            await asyncio.sleep(0)

        evicted, fresh = await asyncio.gather(sweeper, lookup)

        assert evicted == 1
        assert stale.evicted
        assert fresh is not stale
        assert not fresh.evicted
        assert fresh.directory.is_dir()
        assert fresh.directory != stale.directory
        assert not stale.directory.exists()
        assert KEY in store

    @pytest.mark.asyncio
    async def test_directories_removed_outside_table_lock(self, store: ArtifactStore, monkeypatch) -> None:
        entry = await store.get_or_create(KEY)
        real_rmtree = shutil.rmtree
        table_locked = []

        def recording_rmtree(path, *args, **kwargs):
            table_locked.append(store._table_lock.locked())
            real_rmtree(path, *args, **kwargs)

        monkeypatch.setattr(artifacts.shutil, "rmtree", recording_rmtree)

        assert await store.sweep(ttl=0, now=time.monotonic() + 1) == 1
        assert table_locked == [False]
        assert not entry.directory.exists()
