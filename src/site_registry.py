# src/site_registry.py

import json
import logging
import shutil
import time
from pathlib import Path
from typing import Callable, Optional

from aiohttp import ClientSession
from cachetools import TTLCache
from pydantic import ValidationError

from cache_errors import SiteNotFound, UpstreamError
from models import Site, SiteList
from upstream_client import fetch_json

logger = logging.getLogger(__name__)

DATA_FILE_NAME = "db.json"
TEMPLATE_FILE_NAME = "db.template.json"
REMOTE_CACHE_TTL = 5 * 60  # 5 分钟


class SiteRegistry:
    """
    站点列表：优先使用远程配置（带 5 分钟缓存），失败时回退到本地 db.json。
    """

    def __init__(
        self,
        data_dir: Path,
        session: Optional[ClientSession] = None,
        remote_url: str = "",
        timeout: float = 5,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.data_dir = Path(data_dir)
        self.data_file = self.data_dir / DATA_FILE_NAME
        self.template_file = self.data_dir / TEMPLATE_FILE_NAME
        self.session = session
        self.remote_url = remote_url
        self.timeout = timeout
        self._remote_cache = TTLCache(maxsize=1, ttl=REMOTE_CACHE_TTL, timer=timer)
        self._last_remote: Optional[SiteList] = None
        self.ensure_local_file()

    def ensure_local_file(self):
        if self.data_file.is_file():
            return
        self.data_dir.mkdir(parents=True, exist_ok=True)
        if self.template_file.is_file():
            shutil.copyfile(self.template_file, self.data_file)
            logger.info(f"[Init] Created {self.data_file} from template.")
        else:
            self.data_file.write_text(json.dumps({"sites": []}, indent=2), encoding="utf-8")
            logger.info(f"[Init] Created default {self.data_file}.")

    @staticmethod
    def parse_sites(data: dict, source) -> SiteList:
        """逐条校验站点，格式错误的条目记录日志后跳过，不影响其他站点。"""
        sites = []
        for entry in data.get("sites", []):
            try:
                sites.append(Site.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping invalid site entry in {source}: {entry!r} ({e.error_count()} errors)")
        return SiteList.model_validate({**data, "sites": sites})

    def load_local(self) -> SiteList:
        try:
            with open(self.data_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict) or not isinstance(data.get("sites", []), list):
                raise ValueError("expected an object with a 'sites' list")
            return self.parse_sites(data, self.data_file)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read site list from {self.data_file}: {e}")
            return SiteList()

    async def _load_remote(self) -> Optional[SiteList]:
        # 失败的结果同样缓存，远程不可用时不会让每个请求都等待超时
        if "sites" in self._remote_cache:
            return self._remote_cache["sites"]

        try:
            data = await fetch_json(self.session, self.remote_url, timeout=self.timeout)
            if isinstance(data, dict) and isinstance(data.get("sites"), list):
                sites = self.parse_sites(data, self.remote_url)
                self._remote_cache["sites"] = sites
                self._last_remote = sites
                logger.info("[Remote] Config loaded successfully")
                return sites
            logger.warning(f"[Remote] {self.remote_url} did not return a 'sites' list, ignoring it.")
        except (UpstreamError, ValidationError) as e:
            logger.error(f"[Remote] Failed to load config: {e}")

        # 远程失败时使用上一次成功获取的副本，没有则为 None（回退到本地）
        self._remote_cache["sites"] = self._last_remote
        return self._last_remote

    async def get_sites(self) -> SiteList:
        if self.remote_url and self.session is not None:
            remote = await self._load_remote()
            if remote is not None:
                return remote
        return self.load_local()

    async def find_site(self, site_key: str) -> Site:
        sites = await self.get_sites()
        for site in sites.sites:
            if site.key == site_key:
                return site
        raise SiteNotFound(site_key)
