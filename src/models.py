# src/models.py

from pydantic import BaseModel, Field, ConfigDict
from typing import List, Literal, Optional

DEFAULT_IMAGE_SIZES = ["w300", "w342", "w500", "w780", "w1280", "original"]


class Site(BaseModel):
    # 前端可能在站点上附加其他字段，原样保留
    model_config = ConfigDict(extra="allow")

    key: str
    name: str = ""
    api: str


class SiteList(BaseModel):
    model_config = ConfigDict(extra="allow")

    sites: List[Site] = Field(default_factory=list)


class SearchRequest(BaseModel):
    keyword: str
    site_key: str = Field(alias="siteKey")

    model_config = ConfigDict(populate_by_name=True)


class DetailRequest(BaseModel):
    # 不同站点的 ID 可能是数字也可能是字符串
    id: str | int
    site_key: str = Field(alias="siteKey")

    model_config = ConfigDict(populate_by_name=True)


class VerifyRequest(BaseModel):
    password: Optional[str] = None


class AppConfig(BaseModel):
    port: int = Field(default=3000)
    log_level: Literal["debug", "info", "warn", "error"] = Field(default="info")

    # 数据目录，留空则使用 config 目录
    data_dir: str = Field(default="")

    # 搜索/详情缓存：json, sqlite, memory, none
    cache_type: Literal["json", "sqlite", "memory", "none"] = Field(default="json")
    search_ttl: int = Field(default=600)       # 10 分钟
    detail_ttl: int = Field(default=3600)      # 1 小时
    # 过期条目的定时清理间隔（分钟），0 为禁用
    cache_sweep_interval_minutes: int = Field(default=0)

    # 图片缓存
    image_cache_dir: str = Field(default="")
    image_cache_max_mb: int = Field(default=1024)
    image_clean_trigger: int = Field(default=50)   # 每新增 N 张图片检查一次
    image_cdn_url: str = Field(default="https://image.tmdb.org/t/p/{size}/{filename}")
    image_sizes: List[str] = Field(default_factory=lambda: list(DEFAULT_IMAGE_SIZES))

    # 上游超时（秒）
    search_timeout: float = Field(default=8)
    detail_timeout: float = Field(default=8)
    image_timeout: float = Field(default=10)
    remote_sites_timeout: float = Field(default=5)

    # 远程站点配置
    remote_db_url: str = Field(default="")

    access_password: str = Field(default="")

    tmdb_api_key: Optional[str] = Field(default="")
    tmdb_proxy_url: Optional[str] = Field(default="")
