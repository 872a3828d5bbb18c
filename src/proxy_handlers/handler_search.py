# src/proxy_handlers/handler_search.py

import logging
from typing import Any, Dict

from cache_context import CacheContext
from cache_errors import DetailFailed, NotFound, SearchFailed, UpstreamError, UpstreamTimeout
from upstream_client import fetch_json

logger = logging.getLogger(__name__)

# 搜索结果只保留前端需要的字段
SEARCH_FIELDS = ("vod_id", "vod_name", "vod_pic", "vod_remarks", "vod_year", "type_name")


def search_cache_key(site_key: str, keyword: str) -> str:
    return f"{site_key}_{keyword}"


def detail_cache_key(site_key: str, item_id) -> str:
    return f"{site_key}_detail_{item_id}"


def _items(data: Any) -> list:
    items = data.get("list") if isinstance(data, dict) else None
    return items if isinstance(items, list) else []


def shape_search_result(data: Any) -> Dict[str, list]:
    return {
        "list": [
            {field: item[field] for field in SEARCH_FIELDS if field in item}
            for item in _items(data)
            if isinstance(item, dict)
        ]
    }


async def search_or_fetch(ctx: CacheContext, site_key: str, keyword: str) -> Dict[str, list]:
    site = await ctx.sites.find_site(site_key)

    cache_key = search_cache_key(site_key, keyword)
    cached = ctx.ttl_store.get("search", cache_key)
    if cached is not None:
        logger.info(f"✅ Cache HIT search: {cache_key}")
        return cached

    logger.info(f"[Search] {site.name} -> {keyword}")
    try:
        data = await fetch_json(
            ctx.session, site.api,
            params={"ac": "detail", "wd": keyword},
            timeout=ctx.config.search_timeout,
        )
    except UpstreamError as e:
        logger.error(f"[Search Error] {site.name}: {e}")
        raise SearchFailed(f"Search on {site.key} failed", timed_out=isinstance(e, UpstreamTimeout)) from e

    result = shape_search_result(data)
    ctx.ttl_store.set("search", cache_key, result, ctx.config.search_ttl)
    return result


async def detail_or_fetch(ctx: CacheContext, site_key: str, item_id) -> Dict[str, Any]:
    site = await ctx.sites.find_site(site_key)

    cache_key = detail_cache_key(site_key, item_id)
    cached = ctx.ttl_store.get("detail", cache_key)
    if cached is not None:
        logger.info(f"✅ Cache HIT detail: {cache_key}")
        return cached

    logger.info(f"[Detail] {site.name} -> ID: {item_id}")
    try:
        data = await fetch_json(
            ctx.session, site.api,
            params={"ac": "detail", "ids": str(item_id)},
            timeout=ctx.config.detail_timeout,
        )
    except UpstreamError as e:
        logger.error(f"[Detail Error] {site.name}: {e}")
        raise DetailFailed(f"Detail {item_id} on {site.key} failed", timed_out=isinstance(e, UpstreamTimeout)) from e

    items = _items(data)
    if not items:
        # 空结果不缓存
        raise NotFound(f"{site.key} has no item {item_id}")

    detail = items[0]
    ctx.ttl_store.set("detail", cache_key, detail, ctx.config.detail_ttl)
    return detail
