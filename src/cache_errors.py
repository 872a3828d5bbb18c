# src/cache_errors.py

class CacheProxyError(Exception):
    """
    所有缓存代理异常的基类。
    status_code / public_message 用于路由层映射为返回给客户端的响应。
    """
    status_code = 500
    public_message = "Internal error"


class InvalidParameter(CacheProxyError):
    """尺寸或文件名不合法，在任何 I/O 之前就被拒绝。"""
    status_code = 400
    public_message = "Invalid parameters"


class SiteNotFound(CacheProxyError):
    status_code = 404
    public_message = "Site not found"

    def __init__(self, site_key: str):
        super().__init__(f"Site not found: {site_key}")
        self.site_key = site_key


class NotFound(CacheProxyError):
    """上游正常响应，但没有匹配的记录。"""
    status_code = 404
    public_message = "Not found"


# --- 上游错误 ---

class UpstreamError(CacheProxyError):
    status_code = 502
    public_message = "Upstream request failed"


class UpstreamTimeout(UpstreamError):
    status_code = 504


class UpstreamFailure(UpstreamError):
    pass


class _OperationFailed(CacheProxyError):
    """业务层失败，总是 `raise ... from` 一个 UpstreamError。"""
    status_code = 500

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out


class SearchFailed(_OperationFailed):
    public_message = "Search failed"


class DetailFailed(_OperationFailed):
    public_message = "Detail fetch failed"


class FetchFailed(_OperationFailed):
    # 图片拉取失败对客户端表现为 404
    status_code = 404
    public_message = "Image not found"


# --- 不会传播到请求路径的错误，只记录日志 ---

class PersistenceCorrupt(CacheProxyError):
    def __init__(self, path, reason):
        super().__init__(f"Cache file {path} is unreadable: {reason}")
        self.path = path


class EvictionIOError(CacheProxyError):
    def __init__(self, path, reason):
        super().__init__(f"Failed to delete {path}: {reason}")
        self.path = path
