"""Tests for the fetch-through image cache."""

import asyncio
import os

import pytest

from cache_errors import FetchFailed, InvalidParameter
from image_cache import PARTIAL_SUFFIX, ImageCache
from image_eviction import EvictionController

JPEG = b"\xff\xd8\xff\xe0" + bytes(range(256)) * 64


@pytest.fixture
def image_root(tmp_path):
    return tmp_path / "images"


@pytest.fixture
def eviction(image_root):
    return EvictionController(image_root, capacity_bytes=10 * 1024 * 1024, trigger_count=50, trim_delay=0)


@pytest.fixture
def cache(image_root, http_session, eviction, upstream):
    upstream.images["poster.jpg"] = JPEG
    return ImageCache(image_root, http_session, eviction, cdn_url=upstream.cdn_url, timeout=2)


@pytest.mark.asyncio
class TestValidation:
    @pytest.mark.parametrize(
        "size,filename",
        [
            ("w9999", "poster.jpg"),
            ("", "poster.jpg"),
            ("../w500", "poster.jpg"),
            ("w500", "../etc/passwd"),
            ("w500", "a/b.jpg"),
            ("w500", ".."),
            ("w500", "."),
            ("w500", "poster..jpg"),
            ("w500", "/abs.jpg"),
            ("w500", "poster 1.jpg"),
            ("w500", "poster%2F.jpg"),
            ("w500", ""),
        ],
    )
    async def test_rejected_without_io(self, cache, upstream, image_root, size, filename):
        with pytest.raises(InvalidParameter):
            await cache.fetch(size, filename)

        assert not image_root.exists()
        assert sum(upstream.image_calls.values()) == 0

    async def test_allowed_characters(self, cache):
        assert cache.validate("original", "a-B_9.v2.png") == cache.root / "original" / "a-B_9.v2.png"


@pytest.mark.asyncio
class TestFetch:
    async def test_miss_then_hit(self, cache, upstream, eviction):
        first = await cache.fetch("w500", "poster.jpg")

        assert first == cache.root / "w500" / "poster.jpg"
        assert first.read_bytes() == JPEG
        assert upstream.image_calls[("w500", "poster.jpg")] == 1
        assert eviction.new_item_count == 1

        second = await cache.fetch("w500", "poster.jpg")

        assert second == first
        assert second.read_bytes() == JPEG
        assert upstream.image_calls[("w500", "poster.jpg")] == 1
        assert eviction.new_item_count == 1

    async def test_size_variants_are_separate_entries(self, cache, upstream):
        await cache.fetch("w500", "poster.jpg")
        await cache.fetch("original", "poster.jpg")

        assert upstream.image_calls[("w500", "poster.jpg")] == 1
        assert upstream.image_calls[("original", "poster.jpg")] == 1
        assert sorted(p.name for p in cache.root.iterdir()) == ["original", "w500"]

    async def test_hit_refreshes_touch_time(self, cache):
        path = await cache.fetch("w500", "poster.jpg")
        os.utime(path, (1000.0, 1000.0))

        await cache.fetch("w500", "poster.jpg")

        stat = path.stat()
        assert stat.st_mtime > 1000.0
        assert stat.st_atime > 1000.0

    async def test_zero_length_file_is_refetched(self, cache, upstream):
        path = cache.root / "w500" / "poster.jpg"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"")

        await cache.fetch("w500", "poster.jpg")

        assert upstream.image_calls[("w500", "poster.jpg")] == 1
        assert path.read_bytes() == JPEG

    async def test_upstream_404(self, cache, upstream, eviction):
        with pytest.raises(FetchFailed) as exc_info:
            await cache.fetch("w500", "missing.jpg")

        assert exc_info.value.timed_out is False
        assert exc_info.value.status_code == 404
        assert not (cache.root / "w500" / "missing.jpg").exists()
        assert list((cache.root / "w500").iterdir()) == []
        assert eviction.new_item_count == 0

    async def test_empty_body_is_a_failure(self, cache, upstream):
        upstream.images["empty.jpg"] = b""

        with pytest.raises(FetchFailed):
            await cache.fetch("w500", "empty.jpg")

        assert list((cache.root / "w500").iterdir()) == []

    async def test_timeout_mid_stream_leaves_nothing_and_retries(self, cache, upstream, eviction):
        cache.timeout = 0.3
        upstream.image_stall = 1.0

        with pytest.raises(FetchFailed) as exc_info:
            await cache.fetch("w780", "poster.jpg")

        assert exc_info.value.timed_out is True
        dest = cache.root / "w780" / "poster.jpg"
        assert not dest.exists()
        assert not dest.with_name(dest.name + PARTIAL_SUFFIX).exists()
        assert eviction.new_item_count == 0

        upstream.image_stall = 0
        path = await cache.fetch("w780", "poster.jpg")

        assert path.read_bytes() == JPEG
        assert upstream.image_calls[("w780", "poster.jpg")] == 2

    async def test_trim_during_download_keeps_partial_file(self, cache, upstream, eviction):
        upstream.image_stall = 0.5
        eviction.capacity_bytes = 1

        download = asyncio.ensure_future(cache.fetch("w500", "poster.jpg"))
        await asyncio.sleep(0.2)
        partial = cache.root / "w500" / ("poster.jpg" + PARTIAL_SUFFIX)
        assert partial.exists()

        report = eviction.trim()

        assert report.deleted_files == []
        path = await download
        assert path.read_bytes() == JPEG
        assert not partial.exists()

    async def test_unreachable_cdn(self, image_root, http_session, eviction):
        cache = ImageCache(image_root, http_session, eviction, cdn_url="http://127.0.0.1:1/{size}/{filename}")

        with pytest.raises(FetchFailed):
            await cache.fetch("w300", "poster.jpg")

    async def test_insertions_reach_eviction(self, cache, upstream, eviction):
        eviction.trigger_count = 2
        upstream.images["other.jpg"] = JPEG

        await cache.fetch("w500", "poster.jpg")
        await cache.fetch("w500", "other.jpg")
        await eviction.drain()

        assert eviction.new_item_count == 0


@pytest.mark.asyncio
class TestSingleFlight:
    async def test_concurrent_misses_share_one_download(self, cache, upstream, eviction):
        upstream.image_gate = asyncio.Event()

        waiters = [asyncio.ensure_future(cache.fetch("w342", "poster.jpg")) for _ in range(5)]
        await asyncio.sleep(0.1)
        upstream.image_gate.set()
        paths = await asyncio.gather(*waiters)

        assert len(set(paths)) == 1
        assert paths[0].read_bytes() == JPEG
        assert upstream.image_calls[("w342", "poster.jpg")] == 1
        assert eviction.new_item_count == 1
        assert cache._inflight == {}

    async def test_concurrent_failure_is_shared(self, cache, upstream):
        results = await asyncio.gather(
            *(cache.fetch("w342", "missing.jpg") for _ in range(3)),
            return_exceptions=True,
        )

        assert all(isinstance(r, FetchFailed) for r in results)
        assert upstream.image_calls[("w342", "missing.jpg")] == 1
        assert cache._inflight == {}

    async def test_cancelled_waiter_does_not_cancel_download(self, cache, upstream):
        upstream.image_gate = asyncio.Event()

        impatient = asyncio.ensure_future(cache.fetch("w342", "poster.jpg"))
        patient = asyncio.ensure_future(cache.fetch("w342", "poster.jpg"))
        await asyncio.sleep(0.1)
        impatient.cancel()
        upstream.image_gate.set()

        path = await patient
        assert impatient.cancelled()
        assert path.read_bytes() == JPEG
        assert upstream.image_calls[("w342", "poster.jpg")] == 1


@pytest.mark.asyncio
class TestOpen:
    async def test_open_returns_handle(self, cache):
        with await cache.open("w500", "poster.jpg") as f:
            assert f.read() == JPEG

    async def test_open_refetches_when_file_vanishes(self, cache, upstream, monkeypatch):
        real_fetch = cache.fetch
        calls = []

        async def fetch_then_trim(size, filename):
            path = await real_fetch(size, filename)
            calls.append(path)
            if len(calls) == 1:
                # a trim pass deletes the file before it can be opened
                path.unlink()
            return path

        monkeypatch.setattr(cache, "fetch", fetch_then_trim)

        with await cache.open("w500", "poster.jpg") as f:
            assert f.read() == JPEG

        assert len(calls) == 2
        assert upstream.image_calls[("w500", "poster.jpg")] == 2
