# src/proxy_cache.py

import json
import logging
import os
import sqlite3
import time
from pathlib import Path
from typing import Any, Callable, Dict, NamedTuple, Optional

from cache_errors import PersistenceCorrupt
from db_manager import init_ttl_cache_db, TTL_CACHE_DB_NAME

logger = logging.getLogger(__name__)

# 两个互相独立的分区，分区名本身就是地址的一部分，不会发生键冲突
PARTITIONS = ("search", "detail")


class CacheEntry(NamedTuple):
    value: Any
    expire_at: float


class MemoryBackend:
    """纯进程内存，不做持久化。"""

    def __init__(self):
        self.partitions: Dict[str, Dict[str, CacheEntry]] = {p: {} for p in PARTITIONS}

    def read(self, partition: str, key: str) -> Optional[CacheEntry]:
        return self.partitions[partition].get(key)

    def write(self, partition: str, key: str, entry: CacheEntry) -> None:
        self.partitions[partition][key] = entry

    def purge(self, partition: str, now: float) -> int:
        entries = self.partitions[partition]
        expired = [k for k, e in entries.items() if e.expire_at <= now]
        for k in expired:
            del entries[k]
        return len(expired)


class JsonFileBackend(MemoryBackend):
    """
    每个分区一个 JSON 快照文件。每次写入后同步整份落盘（简单实现，不做批量/防抖）。
    """

    def __init__(self, directory: Path):
        super().__init__()
        self.directory = Path(directory)
        self.paths = {p: self.directory / f"cache_{p}.json" for p in PARTITIONS}
        for partition in PARTITIONS:
            try:
                self.partitions[partition] = self._load(partition)
            except PersistenceCorrupt as e:
                logger.warning(f"{e}. Starting with an empty '{partition}' cache.")

    def _load(self, partition: str) -> Dict[str, CacheEntry]:
        path = self.paths[partition]
        if not path.is_file():
            return {}
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            entries = {
                key: CacheEntry(item["value"], float(item["expire_at"]))
                for key, item in raw.items()
            }
        except (OSError, ValueError, TypeError, KeyError, AttributeError) as e:
            raise PersistenceCorrupt(path, e) from e
        logger.info(f"Loaded {len(entries)} '{partition}' cache entries from {path}")
        return entries

    def write(self, partition: str, key: str, entry: CacheEntry) -> None:
        super().write(partition, key, entry)
        self.flush(partition)

    def purge(self, partition: str, now: float) -> int:
        removed = super().purge(partition, now)
        if removed:
            self.flush(partition)
        return removed

    def flush(self, partition: str) -> None:
        path = self.paths[partition]
        data = {k: {"value": e.value, "expire_at": e.expire_at} for k, e in self.partitions[partition].items()}
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            # 落盘失败不影响请求，内存中的数据仍然有效
            logger.error(f"Failed to flush '{partition}' cache to {path}: {e}")


class SqliteBackend:
    """嵌入式数据库，每次写入只更新一行。"""

    def __init__(self, db_path: Path):
        try:
            self.db = init_ttl_cache_db(db_path)
        except sqlite3.DatabaseError as e:
            raise PersistenceCorrupt(db_path, e) from e

    def read(self, partition: str, key: str) -> Optional[CacheEntry]:
        try:
            row = self.db.fetchone(
                "SELECT value, expire_at FROM ttl_cache WHERE partition = ? AND key = ?",
                (partition, key)
            )
            if row is None:
                return None
            return CacheEntry(json.loads(row["value"]), row["expire_at"])
        except (sqlite3.Error, ValueError) as e:
            logger.warning(f"SQLite cache read failed for {partition}/{key}: {e}")
            return None

    def write(self, partition: str, key: str, entry: CacheEntry) -> None:
        try:
            self.db.execute(
                "INSERT OR REPLACE INTO ttl_cache (partition, key, value, expire_at) VALUES (?, ?, ?, ?)",
                (partition, key, json.dumps(entry.value, ensure_ascii=False), entry.expire_at),
                commit=True
            )
        except (sqlite3.Error, TypeError, ValueError) as e:
            logger.error(f"SQLite cache write failed for {partition}/{key}: {e}")

    def purge(self, partition: str, now: float) -> int:
        try:
            cursor = self.db.execute(
                "DELETE FROM ttl_cache WHERE partition = ? AND expire_at <= ?",
                (partition, now),
                commit=True
            )
            return cursor.rowcount
        except sqlite3.Error as e:
            logger.error(f"SQLite cache purge failed for '{partition}': {e}")
            return 0


class NullBackend:
    """缓存关闭：永远未命中。"""

    def read(self, partition: str, key: str) -> Optional[CacheEntry]:
        return None

    def write(self, partition: str, key: str, entry: CacheEntry) -> None:
        pass

    def purge(self, partition: str, now: float) -> int:
        return 0


class TTLStore:
    """
    按分区存放的 TTL 键值缓存。

    过期是惰性的：get 只把过期条目当作不存在，并不删除它，条目会一直保留到被覆盖
    或被 sweep() 清理。
    """

    def __init__(self, backend, clock: Callable[[], float] = time.time):
        self.backend = backend
        self.clock = clock

    @staticmethod
    def _check_partition(partition: str):
        if partition not in PARTITIONS:
            raise ValueError(f"Unknown cache partition: {partition!r}")

    def get(self, partition: str, key: str) -> Any:
        self._check_partition(partition)
        entry = self.backend.read(partition, key)
        if entry is None or entry.expire_at <= self.clock():
            return None
        return entry.value

    def set(self, partition: str, key: str, value: Any, ttl_seconds: float = 600) -> None:
        self._check_partition(partition)
        self.backend.write(partition, key, CacheEntry(value, self.clock() + ttl_seconds))

    def sweep(self) -> int:
        now = self.clock()
        removed = sum(self.backend.purge(p, now) for p in PARTITIONS)
        if removed:
            logger.info(f"Swept {removed} expired cache entries.")
        return removed


def create_ttl_store(cache_type: str, directory: Path, clock: Callable[[], float] = time.time) -> TTLStore:
    """根据 cache_type 选择后端：json, sqlite, memory, none。"""
    directory = Path(directory)
    if cache_type == "json":
        backend = JsonFileBackend(directory)
    elif cache_type == "sqlite":
        try:
            backend = SqliteBackend(directory / TTL_CACHE_DB_NAME)
        except PersistenceCorrupt as e:
            logger.warning(f"{e}. Falling back to an in-memory cache.")
            backend = MemoryBackend()
    elif cache_type == "memory":
        backend = MemoryBackend()
    elif cache_type == "none":
        backend = NullBackend()
    else:
        raise ValueError(f"Unknown cache type: {cache_type!r}")
    logger.info(f"[System] Cache Type: {cache_type}")
    return TTLStore(backend, clock=clock)
