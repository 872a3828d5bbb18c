# src/image_cache.py

import asyncio
import logging
import os
import re
import time
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, Tuple

from aiohttp import ClientSession

from cache_errors import FetchFailed, InvalidParameter, UpstreamError, UpstreamFailure, UpstreamTimeout
from image_eviction import PARTIAL_SUFFIX, EvictionController
from models import DEFAULT_IMAGE_SIZES
from upstream_client import stream_to_file

logger = logging.getLogger(__name__)

FILENAME_REGEX = re.compile(r"^[a-zA-Z0-9_\-.]+$")
DEFAULT_CDN_URL = "https://image.tmdb.org/t/p/{size}/{filename}"


class ImageCache:
    """
    按 (size, filename) 缓存 CDN 图片到本地磁盘：
    cache_root/<size>/<filename>。长度为 0 或不存在的文件视为未缓存。
    """

    def __init__(
        self,
        root: Path,
        session: ClientSession,
        eviction: EvictionController,
        cdn_url: str = DEFAULT_CDN_URL,
        allowed_sizes: Iterable[str] = DEFAULT_IMAGE_SIZES,
        timeout: float = 10,
    ):
        self.root = Path(root)
        self.session = session
        self.eviction = eviction
        self.cdn_url = cdn_url
        self.allowed_sizes = frozenset(allowed_sizes)
        self.timeout = timeout
        # 正在下载的 key -> 共享的下载任务
        self._inflight: Dict[Tuple[str, str], asyncio.Task] = {}

    def validate(self, size: str, filename: str) -> Path:
        if size not in self.allowed_sizes:
            raise InvalidParameter(f"Unknown image size: {size!r}")
        if not FILENAME_REGEX.match(filename) or ".." in filename or filename == ".":
            raise InvalidParameter(f"Invalid image filename: {filename!r}")
        return self.root / size / filename

    def cdn_url_for(self, size: str, filename: str) -> str:
        return self.cdn_url.format(size=size, filename=filename)

    @staticmethod
    def _touch_if_cached(path: Path) -> bool:
        try:
            if path.stat().st_size <= 0:
                return False
            # 同时更新 atime 和 mtime，清理时按 mtime 判断新旧
            now = time.time()
            os.utime(path, (now, now))
        except FileNotFoundError:
            # 清理任务可能刚刚删掉了它
            return False
        return True

    async def fetch(self, size: str, filename: str) -> Path:
        path = self.validate(size, filename)

        if self._touch_if_cached(path):
            logger.debug(f"[Image Cache] Hit: {size}/{filename}")
            return path

        key = (size, filename)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._download(size, filename, path))
            self._inflight[key] = task
            task.add_done_callback(lambda t, key=key: self._release(key, t))
        else:
            logger.debug(f"[Image Cache] Joining in-flight download: {size}/{filename}")

        # shield：某个等待者被取消时，不影响其他等待者共享的下载
        return await asyncio.shield(task)

    def _release(self, key: Tuple[str, str], task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # 标记异常已读取，所有等待者都已离开时也不会产生告警
            task.exception()

    async def _download(self, size: str, filename: str, path: Path) -> Path:
        url = self.cdn_url_for(size, filename)
        partial = path.with_name(path.name + PARTIAL_SUFFIX)
        logger.info(f"[Image Proxy] Fetching: {url}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            written = await stream_to_file(self.session, url, partial, self.timeout)
            if written == 0:
                raise UpstreamFailure(f"{url} returned an empty body")
            os.replace(partial, path)
        except (UpstreamError, OSError) as e:
            self._discard(partial, path)
            logger.error(f"[Image Proxy Error] {url}: {e}")
            raise FetchFailed(
                f"Image not found: {size}/{filename}",
                timed_out=isinstance(e, UpstreamTimeout)
            ) from e
        except asyncio.CancelledError:
            self._discard(partial, path)
            raise

        self.eviction.notify_insertion()
        return path

    @staticmethod
    def _discard(partial: Path, path: Path):
        partial.unlink(missing_ok=True)
        try:
            # 残留的空文件也一并删除，避免之后被误判
            if path.stat().st_size == 0:
                path.unlink(missing_ok=True)
        except FileNotFoundError:
            pass

    async def open(self, size: str, filename: str) -> BinaryIO:
        """返回已缓存图片的文件句柄；文件在 fetch 与 open 之间被清理掉时重新拉取一次。"""
        path = await self.fetch(size, filename)
        try:
            return open(path, "rb")
        except FileNotFoundError:
            logger.info(f"[Image Cache] {path} vanished before it could be opened, fetching again.")
            path = await self.fetch(size, filename)
            return open(path, "rb")
