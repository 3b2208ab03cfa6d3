"""
app/services/__init__.py

サービスパッケージ
"""
from .cache import TTLCache
from .feed_fetcher import HttpFeedFetcher
from .metrics import ErrorMetrics
from .retry import CircuitBreaker, RetryConfig, RetryPolicy
from .station_query import StationQueryService
from .velib_client import VelibClient

__all__ = [
    "TTLCache",
    "HttpFeedFetcher",
    "ErrorMetrics",
    "CircuitBreaker",
    "RetryConfig",
    "RetryPolicy",
    "StationQueryService",
    "VelibClient",
]
