"""Shared fixtures: a fake upstream (VOD API, image CDN, remote site list) and cache contexts."""

from __future__ import annotations

import asyncio
import json
import typing as t
from collections import Counter

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from cache_context import build_context
from models import AppConfig


class FakeClock:
    """Manually advanced clock for TTL tests."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """In-process stand-in for the VOD API, the image CDN and the remote site list."""

    API_PATH = "/api.php/provide/vod"

    def __init__(self):
        self.base_url = ""
        # image CDN
        self.images: t.Dict[str, bytes] = {}
        self.image_calls: Counter = Counter()
        self.image_stall: float = 0.0
        self.image_gate: t.Optional[asyncio.Event] = None
        # VOD API
        self.api_calls: t.List[t.Dict[str, str]] = []
        self.api_status = 200
        self.api_delay = 0.0
        self.search_items: t.List[dict] = []
        self.detail_items: t.Dict[str, dict] = {}
        # remote site list
        self.remote_calls = 0
        self.remote_status = 200
        self.remote_payload: t.Any = {"sites": []}

    @property
    def api_url(self) -> str:
        return self.base_url + self.API_PATH

    @property
    def cdn_url(self) -> str:
        return self.base_url + "/t/p/{size}/{filename}"

    @property
    def remote_url(self) -> str:
        return self.base_url + "/sites.json"

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/t/p/{size}/{filename}", self._image)
        app.router.add_get(self.API_PATH, self._api)
        app.router.add_get("/sites.json", self._remote_sites)
        return app

    async def _image(self, request: web.Request) -> web.StreamResponse:
        size = request.match_info["size"]
        filename = request.match_info["filename"]
        self.image_calls[(size, filename)] += 1

        body = self.images.get(filename)
        if body is None:
            return web.Response(status=404, text="not found")

        if self.image_gate is not None:
            await self.image_gate.wait()

        if self.image_stall:
            # send half the body, then stall past the client's timeout
            resp = web.StreamResponse(headers={"Content-Type": "image/jpeg"})
            resp.content_length = len(body)
            await resp.prepare(request)
            await resp.write(body[: len(body) // 2])
            await asyncio.sleep(self.image_stall)
            await resp.write(body[len(body) // 2:])
            await resp.write_eof()
            return resp

        return web.Response(body=body, content_type="image/jpeg")

    async def _api(self, request: web.Request) -> web.Response:
        params = dict(request.query)
        self.api_calls.append(params)
        if self.api_delay:
            await asyncio.sleep(self.api_delay)
        if self.api_status != 200:
            return web.Response(status=self.api_status, text="upstream error")
        if "wd" in params:
            return web.json_response({"code": 1, "list": self.search_items})
        item = self.detail_items.get(params.get("ids", ""))
        # many VOD sites answer with text/html
        body = json.dumps({"code": 1, "list": [item] if item else []})
        return web.Response(text=body, content_type="text/html")

    async def _remote_sites(self, request: web.Request) -> web.Response:
        self.remote_calls += 1
        if self.remote_status != 200:
            return web.Response(status=self.remote_status)
        return web.json_response(self.remote_payload)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def upstream():
    fake = FakeUpstream()
    server = TestServer(fake.build_app())
    await server.start_server()
    fake.base_url = f"http://{server.host}:{server.port}"
    try:
        yield fake
    finally:
        await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession() as session:
        yield session


def write_sites(data_dir, sites):
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "db.json").write_text(json.dumps({"sites": sites}), encoding="utf-8")


@pytest.fixture
def app_config(tmp_path, upstream):
    write_sites(tmp_path, [{"key": "site1", "name": "Site One", "api": upstream.api_url}])
    return AppConfig(
        data_dir=str(tmp_path),
        cache_type="memory",
        image_cdn_url=upstream.cdn_url,
        image_timeout=2,
        search_timeout=2,
        detail_timeout=2,
    )


@pytest_asyncio.fixture
async def ctx(app_config, http_session, clock):
    context = build_context(app_config, http_session, clock=clock)
    yield context
    await context.eviction.drain()
