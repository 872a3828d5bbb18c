# src/upstream_client.py

import asyncio
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientSession, ClientError

from cache_errors import UpstreamFailure, UpstreamTimeout

CHUNK_SIZE = 8192


def _ensure_success(resp: aiohttp.ClientResponse, url: str):
    if not 200 <= resp.status < 300:
        raise UpstreamFailure(f"{url} returned HTTP {resp.status}")


async def fetch_json(
    session: ClientSession,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 8,
) -> Any:
    """
    GET 一个 JSON 接口。超时抛出 UpstreamTimeout，连接错误、非 2xx 和无法解析的响应体
    抛出 UpstreamFailure。
    """
    try:
        async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            _ensure_success(resp, url)
            # 很多采集站返回 text/html 的 Content-Type，这里不校验
            return await resp.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeout(f"{url} timed out after {timeout}s") from e
    except ClientError as e:
        raise UpstreamFailure(f"{url}: {e}") from e
    except ValueError as e:
        raise UpstreamFailure(f"{url} returned an invalid JSON body: {e}") from e


async def stream_to_file(session: ClientSession, url: str, dest: Path, timeout: float = 10) -> int:
    """
    把远程资源逐块写入 dest，不在内存中缓冲整个对象。返回写入的字节数。
    写文件出错时 OSError 原样抛出，由调用方负责清理。
    """
    written = 0
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            _ensure_success(resp, url)
            with open(dest, "wb") as f:
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeout(f"{url} timed out after {timeout}s ({written} bytes received)") from e
    except ClientError as e:
        raise UpstreamFailure(f"{url}: {e}") from e
    return written
