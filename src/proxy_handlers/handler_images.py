# src/proxy_handlers/handler_images.py

import logging
import mimetypes
import os
from typing import BinaryIO

from fastapi import Response
from fastapi.responses import PlainTextResponse, StreamingResponse

from cache_context import CacheContext
from cache_errors import FetchFailed, InvalidParameter

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024


async def image_or_fetch(ctx: CacheContext, size: str, filename: str) -> BinaryIO:
    """本地命中直接返回，否则从 CDN 拉取并缓存后返回。"""
    return await ctx.images.open(size, filename)


def _iter_file(f: BinaryIO):
    # 文件句柄已经打开，即使清理任务在传输途中删除了文件也能完整读出
    try:
        while True:
            chunk = f.read(CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        f.close()


async def handle_image_request(ctx: CacheContext, size: str, filename: str) -> Response:
    try:
        f = await image_or_fetch(ctx, size, filename)
    except InvalidParameter as e:
        logger.warning(f"IMAGE_HANDLER: rejected {size}/{filename}: {e}")
        return PlainTextResponse(e.public_message, status_code=e.status_code)
    except FetchFailed as e:
        return PlainTextResponse(e.public_message, status_code=e.status_code)

    media_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    headers = {"Content-Length": str(os.fstat(f.fileno()).st_size)}
    return StreamingResponse(_iter_file(f), media_type=media_type, headers=headers)
