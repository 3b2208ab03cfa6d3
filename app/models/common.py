"""
app/models/common.py

共通モデル定義

API全体で使用される統一レスポンス形式とエラーモデルを定義します。

公式ドキュメント:
- Pydantic V2: https://docs.pydantic.dev/latest/
- FastAPI Response Model: https://fastapi.tiangolo.com/tutorial/response-model/
- Generic Types: https://docs.pydantic.dev/latest/concepts/models/#generic-models
"""
from typing import Any, TypeVar, Generic, Optional
from pydantic import BaseModel, Field


# =============================================================================
# ジェネリック型変数
# =============================================================================

T = TypeVar('T')


# =============================================================================
# エラーモデル
# =============================================================================

class ErrorDetail(BaseModel):
    """
    エラー詳細モデル

    Attributes:
        code (str): エラーコード（例: "INVALID_COORDINATES", "SEARCH_RADIUS_TOO_LARGE"）
        message (str): ユーザー向けエラーメッセージ
        details (dict): 構造化情報（違反したフィールド、値、上限など）

    エラーコード一覧:
        - HTTP_ERROR: 上流APIの通信・HTTPエラー
        - RATE_LIMITED: 上流APIのレート制限
        - PARSE_ERROR: 上流レスポンスのパース失敗
        - VALIDATION_ERROR: 入力値が不正
        - INVALID_COORDINATES: 座標が不正（対応エリアの矩形外を含む）
        - SEARCH_RADIUS_TOO_LARGE: 検索半径が上限超過
        - RESULT_LIMIT_EXCEEDED: 取得件数が上限超過
        - QUERY_TOO_SHORT: 検索語が短すぎる
        - OUTSIDE_SERVICE_AREA: サービスエリア外
        - STATION_NOT_FOUND: ステーションが存在しない
        - CAPACITY_VIOLATION: 台数 + ドック数 が収容台数を超過
        - CACHE_UNAVAILABLE: データ取得失敗かつキャッシュなし
        - RETRY_EXHAUSTED: リトライ上限到達
        - TIMEOUT: タイムアウト
        - CIRCUIT_OPEN: サーキットブレーカー作動中
        - INTERNAL_ERROR: 内部エラー
    """
    code: str = Field(
        ...,
        description="エラーコード",
        examples=["INVALID_COORDINATES", "SEARCH_RADIUS_TOO_LARGE"]
    )
    message: str = Field(
        ...,
        description="ユーザー向けエラーメッセージ",
        examples=["座標が不正です", "検索半径が大きすぎます"]
    )
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="構造化されたエラー情報",
        examples=[{"field": "radius_meters", "value": 8000, "limit": 5000}]
    )


# =============================================================================
# 統一APIレスポンスモデル
# =============================================================================

class ApiResponse(BaseModel, Generic[T]):
    """
    統一APIレスポンスモデル（ジェネリック型）

    すべてのAPIエンドポイントで使用する統一的なレスポンス形式。
    成功時はdataにデータを、失敗時はerrorにエラー詳細を格納。

    参照: https://fastapi.tiangolo.com/tutorial/response-model/

    Attributes:
        success (bool): リクエスト成功フラグ
        data (Optional[T]): 成功時のデータ（型パラメータT）
        error (Optional[ErrorDetail]): 失敗時のエラー詳細
    """
    success: bool = Field(
        ...,
        description="リクエスト成功フラグ"
    )
    data: Optional[T] = Field(
        default=None,
        description="成功時のレスポンスデータ"
    )
    error: Optional[ErrorDetail] = Field(
        default=None,
        description="失敗時のエラー詳細"
    )

    class Config:
        """Pydantic設定"""
        json_schema_extra = {
            "examples": [
                {
                    "success": True,
                    "data": {"message": "成功レスポンス例"},
                    "error": None
                },
                {
                    "success": False,
                    "data": None,
                    "error": {
                        "code": "SEARCH_RADIUS_TOO_LARGE",
                        "message": "検索半径が大きすぎます: 8000m（上限 5000m）",
                        "details": {"field": "radius_meters", "value": 8000, "limit": 5000},
                    }
                }
            ]
        }


# =============================================================================
# ヘルパー関数
# =============================================================================

def create_success_response(data: T) -> ApiResponse[T]:
    """
    成功レスポンスを作成するヘルパー関数

    Args:
        data: レスポンスデータ

    Returns:
        ApiResponse[T]: 成功レスポンス
    """
    return ApiResponse(success=True, data=data)


def create_error_response(
    code: str,
    message: str,
    details: Optional[dict[str, Any]] = None,
) -> ApiResponse:
    """
    エラーレスポンスを作成するヘルパー関数

    Args:
        code: エラーコード
        message: エラーメッセージ
        details: 構造化されたエラー情報

    Returns:
        ApiResponse: エラーレスポンス
    """
    return ApiResponse(
        success=False,
        error=ErrorDetail(code=code, message=message, details=details or {})
    )
