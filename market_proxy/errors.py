"""
错误分类
每个异常携带 HTTP 状态码、信封中的错误信息以及可选的响应头
"""

from typing import Dict, Optional


class ProxyError(Exception):
    """代理对调用方可见的错误基类"""

    status_code: int = 500

    def __init__(self, message: str, headers: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.headers = dict(headers or {})


class ConfigurationError(ProxyError):
    """缺少上游凭证等配置错误"""

    status_code = 500


class ClientInputError(ProxyError):
    """请求参数非法：不重试、不缓存"""

    status_code = 400


class UpstreamThrottled(ProxyError):
    """上游限流 / 配额耗尽"""

    status_code = 429

    def __init__(self, message: str, retry_after: int = 1):
        super().__init__(message, headers={"Retry-After": str(retry_after)})
        self.retry_after = retry_after


class UpstreamMalformed(ProxyError):
    """上游返回非 JSON"""

    status_code = 502


class UpstreamRejected(ProxyError):
    """上游返回错误标记或非 2xx 状态"""

    status_code = 502


class UpstreamUnavailable(ProxyError):
    """网络层失败（连接错误等）"""

    status_code = 502


class UpstreamTimeout(ProxyError):
    """上游调用超时"""

    status_code = 504


class LocalIOFailure(Exception):
    """本地磁盘缓存读写失败，仅在缓存层内部抛出并被吞掉"""
