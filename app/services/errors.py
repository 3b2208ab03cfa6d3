"""
app/services/errors.py

エラー定義

サービス層で発生するすべてのエラーを型付き例外として定義する。
各例外は機械可読な `code` と人間向けの `message` を持ち、
ルーター側で ApiResponse のエラーレスポンスへ変換される。

分類:
- リトライ可能: 通信エラー、レート制限、タイムアウト、内部エラー
- リトライ不可: バリデーション、未検出、プロトコル（パース）エラー、サーキットオープン
"""
from typing import Any, Optional

from app.models.common import ErrorDetail


# =============================================================================
# 基底クラス
# =============================================================================

class VelibError(Exception):
    """
    サービス層エラーの基底クラス

    Attributes:
        code (str): 機械可読なエラーコード
        message (str): ユーザー向けエラーメッセージ
        details (dict): 構造化されたエラー情報（フィールド名、値、上限など）
        retryable (bool): リトライ対象かどうか
        retry_after (Optional[float]): 上流が指定した待機秒数
    """
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.retry_after: Optional[float] = None

    def to_detail(self) -> ErrorDetail:
        """ErrorDetail に変換"""
        return ErrorDetail(code=self.code, message=self.message, details=self.details)


# =============================================================================
# 上流API関連
# =============================================================================

class UpstreamHTTPError(VelibError):
    """
    上流APIのHTTPエラー・通信エラー

    status_code が None の場合は接続失敗などのトランスポートエラー。
    408 / 429 / 5xx とトランスポートエラーはリトライ対象。
    """
    code = "HTTP_ERROR"

    def __init__(self, message: str, endpoint: str, status_code: Optional[int] = None):
        super().__init__(message, {"endpoint": endpoint, "status_code": status_code})
        self.endpoint = endpoint
        self.status_code = status_code
        self.retryable = status_code is None or status_code in (408, 429) or status_code >= 500


class RateLimitedError(VelibError):
    """上流APIのレート制限（HTTP 429）"""
    code = "RATE_LIMITED"
    retryable = True

    def __init__(self, endpoint: str, retry_after: Optional[float] = None):
        message = "上流APIのレート制限に達しました"
        if retry_after is not None:
            message += f"（{retry_after:g}秒後に再試行）"
        super().__init__(message, {"endpoint": endpoint, "retry_after_seconds": retry_after})
        self.retry_after = retry_after


class FeedParseError(VelibError):
    """レスポンスのデコード失敗・想定外の構造"""
    code = "PARSE_ERROR"

    def __init__(self, message: str, context: str):
        super().__init__(message, {"context": context})


class OperationTimeoutError(VelibError):
    """1回の試行が制限時間内に完了しなかった"""
    code = "TIMEOUT"
    retryable = True

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"{operation} が {timeout:g} 秒以内に完了しませんでした",
            {"operation": operation, "timeout_seconds": timeout},
        )


class RetryExhaustedError(VelibError):
    """
    リトライ上限に到達

    すべての試行がリトライ可能なエラーで失敗した場合に送出する。
    最後のエラーは last_error と __cause__ の両方で参照できる。
    """
    code = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{operation} が {attempts} 回の試行すべてで失敗しました: {last_error}",
            {
                "operation": operation,
                "attempts": attempts,
                "last_error": getattr(last_error, "code", type(last_error).__name__),
            },
        )
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(VelibError):
    """サーキットブレーカーが開いているため呼び出しを拒否"""
    code = "CIRCUIT_OPEN"

    def __init__(self, retry_in: float):
        super().__init__(
            "上流APIへの呼び出しを一時停止しています",
            {"retry_in_seconds": round(max(retry_in, 0.0), 3)},
        )


class CacheUnavailableError(VelibError):
    """取得に失敗し、フォールバック可能なキャッシュも存在しない"""
    code = "CACHE_UNAVAILABLE"

    def __init__(self, feed: str):
        super().__init__(
            f"{feed} データを取得できず、キャッシュもありません",
            {"feed": feed},
        )


class InternalError(VelibError):
    """分類できない内部エラー"""
    code = "INTERNAL_ERROR"
    retryable = True


# =============================================================================
# 入力バリデーション
# =============================================================================

class ValidationError(VelibError):
    """
    入力バリデーションエラー

    details には field / value / limit を格納する。
    """
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str, value: Any = None, limit: Any = None):
        super().__init__(message, {"field": field, "value": value, "limit": limit})
        self.field = field
        self.value = value
        self.limit = limit


class InvalidCoordinatesError(ValidationError):
    """座標が不正、または対応エリアの矩形外"""
    code = "INVALID_COORDINATES"

    def __init__(self, latitude: float, longitude: float, field: str = "coordinates"):
        super().__init__(
            f"座標が不正です: 緯度 {latitude}, 経度 {longitude}",
            field=field,
            value={"latitude": latitude, "longitude": longitude},
        )


class SearchRadiusTooLargeError(ValidationError):
    code = "SEARCH_RADIUS_TOO_LARGE"

    def __init__(self, radius: float, maximum: float):
        super().__init__(
            f"検索半径が大きすぎます: {radius}m（上限 {maximum}m）",
            field="radius_meters",
            value=radius,
            limit=maximum,
        )


class ResultLimitExceededError(ValidationError):
    code = "RESULT_LIMIT_EXCEEDED"

    def __init__(self, limit: int, maximum: int):
        super().__init__(
            f"取得件数が上限を超えています: {limit}（上限 {maximum}）",
            field="limit",
            value=limit,
            limit=maximum,
        )


class QueryTooShortError(ValidationError):
    code = "QUERY_TOO_SHORT"

    def __init__(self, query: str, minimum: int):
        super().__init__(
            f"検索語が短すぎます: '{query}'（{minimum}文字以上）",
            field="query",
            value=query,
            limit=minimum,
        )


class OutsideServiceAreaError(VelibError):
    """サービスエリア（基準点からの半径）の外"""
    code = "OUTSIDE_SERVICE_AREA"

    def __init__(self, distance_km: float, max_km: float, field: str = "coordinates"):
        super().__init__(
            f"サービスエリア外です: パリ中心から {distance_km:.1f}km（上限 {max_km:g}km）",
            {"field": field, "distance_km": round(distance_km, 3), "max_km": max_km},
        )


class StationNotFoundError(VelibError):
    code = "STATION_NOT_FOUND"

    def __init__(self, station_code: str):
        super().__init__(
            f"ステーションが見つかりません: {station_code}",
            {"station_code": station_code},
        )


class CapacityInvariantError(VelibError):
    """空き台数 + 空きドック数 が収容台数を超えている"""
    code = "CAPACITY_VIOLATION"

    def __init__(self, station_code: str, bikes: int, docks: int, capacity: int):
        super().__init__(
            f"ステーション {station_code}: 自転車 {bikes} + ドック {docks} が収容台数 {capacity} を超えています",
            {"station_code": station_code, "bikes": bikes, "docks": docks, "capacity": capacity},
        )


# =============================================================================
# 分類ヘルパー
# =============================================================================

def is_retryable(error: BaseException) -> bool:
    """
    エラーがリトライ対象かどうか

    VelibError 以外の例外は一時的な内部エラーとして扱う。
    """
    if isinstance(error, VelibError):
        return error.retryable
    return isinstance(error, Exception)


def error_code(error: BaseException) -> str:
    """メトリクス用のエラーコード"""
    if isinstance(error, VelibError):
        return error.code
    return InternalError.code
