# src/image_eviction.py

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, NamedTuple, Set, Tuple

from cache_errors import EvictionIOError

logger = logging.getLogger(__name__)

MB = 1024 * 1024
# 下载中的临时文件后缀，'~' 不在合法文件名字符集中，不会与真实文件重名
PARTIAL_SUFFIX = "~part"


class CachedFile(NamedTuple):
    path: Path
    size: int
    touched_at: float


@dataclass
class TrimReport:
    total_bytes: int = 0
    file_count: int = 0
    deleted_bytes: int = 0
    deleted_files: List[Path] = field(default_factory=list)
    failures: List[EvictionIOError] = field(default_factory=list)

    @property
    def remaining_bytes(self) -> int:
        return self.total_bytes - self.deleted_bytes


def scan_cache(root: Path) -> Tuple[int, List[CachedFile]]:
    """
    递归遍历缓存目录，文件系统本身就是索引。扫描期间消失的文件直接跳过。
    正在下载的临时文件不计入总大小，也不会被删除。
    """
    total = 0
    files = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for name in filenames:
            if name.endswith(PARTIAL_SUFFIX):
                continue
            path = Path(dirpath) / name
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            total += st.st_size
            files.append(CachedFile(path, st.st_size, st.st_mtime))
    return total, files


class EvictionController:
    """
    统计新写入的图片数量，每 trigger_count 张触发一次延迟执行的清理：
    总大小超过 capacity_bytes 时，按最后访问时间从旧到新删除，直到降到容量的 90%。
    """

    def __init__(
        self,
        root: Path,
        capacity_bytes: int,
        trigger_count: int = 50,
        trim_delay: float = 0.1,
        headroom: float = 0.9,
    ):
        self.root = Path(root)
        self.capacity_bytes = capacity_bytes
        self.trigger_count = max(1, trigger_count)
        self.trim_delay = trim_delay
        self.headroom = headroom
        self.new_item_count = 0
        self._pending: Set[asyncio.Task] = set()

    def notify_insertion(self) -> bool:
        """记录一次新写入。返回本次是否安排了清理。"""
        self.new_item_count += 1
        if self.new_item_count < self.trigger_count:
            return False
        self.new_item_count = 0

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # 没有事件循环（例如脚本中直接调用）时同步执行
            self.trim()
            return True

        task = loop.create_task(self._deferred_trim())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return True

    async def _deferred_trim(self):
        await asyncio.sleep(self.trim_delay)
        try:
            # 全量扫描放到线程中，不阻塞事件循环
            await asyncio.to_thread(self.trim)
        except Exception:
            logger.exception("[Cache Trim Error]")

    async def drain(self):
        """等待所有已安排的清理完成。"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def trim(self) -> TrimReport:
        report = TrimReport()
        report.total_bytes, files = scan_cache(self.root)
        report.file_count = len(files)
        logger.info(f"[Cache Trim] Current size: {report.total_bytes / MB:.2f} MB ({report.file_count} files)")

        if report.total_bytes <= self.capacity_bytes:
            return report

        target = report.total_bytes - self.capacity_bytes * self.headroom
        # 最旧的在前，用 mtime 近似 LRU
        files.sort(key=lambda f: f.touched_at)

        for cached in files:
            if report.deleted_bytes >= target:
                break
            try:
                cached.path.unlink()
            except OSError as e:
                error = EvictionIOError(cached.path, e)
                logger.error(f"[Cache Trim] {error}")
                report.failures.append(error)
                continue
            report.deleted_bytes += cached.size
            report.deleted_files.append(cached.path)

        logger.info(
            f"[Cache Trim] Cleaned {report.deleted_bytes / MB:.2f} MB "
            f"({len(report.deleted_files)} files, {len(report.failures)} failures)"
        )
        return report
