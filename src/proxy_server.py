# src/proxy_server.py

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import aiohttp
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

import config_manager
from cache_context import CacheContext, build_context
from cache_errors import CacheProxyError
from models import AppConfig, DetailRequest, SearchRequest, VerifyRequest
from proxy_handlers import handler_auth, handler_images, handler_search

logger = logging.getLogger(__name__)

PUBLIC_DIR = Path(__file__).parent.parent / "public"
SWEEP_JOB_ID = "cache_sweep_job"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def configure_logging(level: str):
    logging.basicConfig(
        level=LOG_LEVELS.get(level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


async def sweep_expired_entries(ctx: CacheContext):
    ctx.ttl_store.sweep()


def start_sweep_scheduler(ctx: CacheContext) -> Optional[AsyncIOScheduler]:
    interval = ctx.config.cache_sweep_interval_minutes
    if not interval or interval <= 0:
        return None
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        sweep_expired_entries,
        'interval',
        minutes=interval,
        args=[ctx],
        id=SWEEP_JOB_ID,
        replace_existing=True
    )
    scheduler.start()
    logger.info(f"Cache sweep job scheduled to run every {interval} minutes.")
    return scheduler


def get_ctx(request: Request) -> CacheContext:
    return request.app.state.cache_ctx


def create_app(config: Optional[AppConfig] = None, context: Optional[CacheContext] = None) -> FastAPI:
    """
    应用工厂。传入 context 时使用调用方的缓存上下文和 HTTP 会话（测试用），
    否则在 lifespan 中创建全局 aiohttp 会话并构建上下文。
    """
    if config is None:
        config = context.config if context is not None else config_manager.load_config()
    configure_logging(config.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if context is None:
            session = aiohttp.ClientSession(cookie_jar=aiohttp.DummyCookieJar())
            logger.info("Global AIOHTTP ClientSession created.")
            app.state.cache_ctx = build_context(config, session)
            logger.info(f"Image Cache Directory: {app.state.cache_ctx.images.root}")
        scheduler = start_sweep_scheduler(app.state.cache_ctx)
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        await app.state.cache_ctx.eviction.drain()
        if context is None:
            await app.state.cache_ctx.session.close()
            logger.info("Global AIOHTTP ClientSession closed.")

    app = FastAPI(title="VOD Cache Proxy", lifespan=lifespan)
    app.state.cache_ctx = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(CacheProxyError)
    async def cache_proxy_error_handler(request: Request, exc: CacheProxyError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})

    @app.get("/api/config")
    async def get_public_config(request: Request):
        cfg = get_ctx(request).config
        return {"tmdb_api_key": cfg.tmdb_api_key, "tmdb_proxy_url": cfg.tmdb_proxy_url}

    @app.get("/api/sites")
    async def get_sites(request: Request):
        sites = await get_ctx(request).sites.get_sites()
        return sites.model_dump()

    @app.post("/api/search")
    async def search(body: SearchRequest, request: Request):
        return await handler_search.search_or_fetch(get_ctx(request), body.site_key, body.keyword)

    @app.post("/api/detail")
    async def detail(body: DetailRequest, request: Request):
        return await handler_search.detail_or_fetch(get_ctx(request), body.site_key, body.id)

    @app.get("/api/tmdb-image/{size}/{filename}")
    async def tmdb_image(size: str, filename: str, request: Request) -> Response:
        return await handler_images.handle_image_request(get_ctx(request), size, filename)

    @app.get("/api/auth/check")
    async def auth_check(request: Request):
        return handler_auth.handle_auth_check(get_ctx(request).config)

    @app.post("/api/auth/verify")
    async def auth_verify(body: VerifyRequest, request: Request):
        client_ip = request.client.host if request.client else "unknown"
        return handler_auth.handle_verify_password(get_ctx(request).config, body.password, client_ip)

    if PUBLIC_DIR.is_dir():
        app.mount("/", StaticFiles(directory=str(PUBLIC_DIR), html=True), name="static")
        logger.info(f"Serving front-end from {PUBLIC_DIR}")
    else:
        logger.warning(f"Front-end directory not found at {PUBLIC_DIR}, skipping mount.")

    return app
