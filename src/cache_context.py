# src/cache_context.py

import time
from dataclasses import dataclass
from typing import Callable

from aiohttp import ClientSession

import config_manager
from image_cache import ImageCache
from image_eviction import EvictionController, MB
from models import AppConfig
from proxy_cache import TTLStore, create_ttl_store
from site_registry import SiteRegistry


@dataclass
class CacheContext:
    """进程内所有缓存状态的持有者，随请求传递给各个处理函数，测试时可以各自独立创建。"""
    config: AppConfig
    session: ClientSession
    ttl_store: TTLStore
    sites: SiteRegistry
    eviction: EvictionController
    images: ImageCache


def build_context(config: AppConfig, session: ClientSession, clock: Callable[[], float] = time.time) -> CacheContext:
    data_dir = config_manager.data_dir(config)
    image_dir = config_manager.image_cache_dir(config)
    image_dir.mkdir(parents=True, exist_ok=True)

    eviction = EvictionController(
        image_dir,
        capacity_bytes=config.image_cache_max_mb * MB,
        trigger_count=config.image_clean_trigger,
    )
    return CacheContext(
        config=config,
        session=session,
        ttl_store=create_ttl_store(config.cache_type, data_dir, clock=clock),
        sites=SiteRegistry(
            data_dir,
            session=session,
            remote_url=config.remote_db_url,
            timeout=config.remote_sites_timeout,
        ),
        eviction=eviction,
        images=ImageCache(
            image_dir,
            session,
            eviction,
            cdn_url=config.image_cdn_url,
            allowed_sizes=config.image_sizes,
            timeout=config.image_timeout,
        ),
    )
