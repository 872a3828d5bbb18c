import sqlite3
import threading
from pathlib import Path

TTL_CACHE_DB_NAME = "cache.db"


class DBManager:
    _instances = {}
    _locks = {}

    def __new__(cls, db_path):
        db_path = str(db_path)
        if db_path not in cls._instances:
            cls._instances[db_path] = super(DBManager, cls).__new__(cls)
            cls._locks[db_path] = threading.Lock()
        return cls._instances[db_path]

    def __init__(self, db_path):
        self.db_path = str(db_path)
        if not hasattr(self, 'conn'):
            self.conn = None

    def get_conn(self):
        # 同一个数据库文件共享一个连接，由锁串行化访问（清理任务可能在其他线程中运行）
        if self.conn is None:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
        return self.conn

    def execute(self, query, params=(), commit=False):
        with self._locks[self.db_path]:
            conn = self.get_conn()
            cursor = conn.cursor()
            cursor.execute(query, params)
            if commit:
                conn.commit()
            return cursor

    def fetchall(self, query, params=()):
        with self._locks[self.db_path]:
            return self.get_conn().execute(query, params).fetchall()

    def fetchone(self, query, params=()):
        with self._locks[self.db_path]:
            return self.get_conn().execute(query, params).fetchone()

    def close(self):
        with self._locks[self.db_path]:
            if self.conn is not None:
                self.conn.close()
                self.conn = None


def init_ttl_cache_db(db_path) -> DBManager:
    db = DBManager(db_path)
    db.execute("""
    CREATE TABLE IF NOT EXISTS ttl_cache (
        partition TEXT NOT NULL,
        key TEXT NOT NULL,
        value TEXT,
        expire_at REAL NOT NULL,
        PRIMARY KEY (partition, key)
    )
    """, commit=True)
    db.execute(
        "CREATE INDEX IF NOT EXISTS idx_ttl_cache_expire ON ttl_cache (expire_at)",
        commit=True
    )
    return db
