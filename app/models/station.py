"""
app/models/station.py

Vélib' ステーション関連のモデル定義

パリ市オープンデータの2つのフィードに対応する:
- velib-emplacement-des-stations: ステーションの静的情報（位置、名称、収容台数）
- velib-disponibilite-en-temps-reel: リアルタイムの空き状況

両者をステーションコードで統合した Station モデルを提供する。
リアルタイム情報は Optional で、欠落は「閉鎖」ではなく「状態不明」を意味する。

公式ドキュメント:
- Paris Open Data: https://opendata.paris.fr/explore/dataset/velib-disponibilite-en-temps-reel/
- Pydantic V2: https://docs.pydantic.dev/latest/
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


# 収容台数の妥当性上限（これを超える値は上流データの異常とみなす）
MAX_STATION_CAPACITY = 200


# =============================================================================
# 列挙型
# =============================================================================

class StationStatus(str, Enum):
    """
    ステーションの稼働状態

    - OPERATIONAL: 設置済みで貸出・返却とも可能
    - INSTALLED: 設置済みだが貸出または返却の一方のみ可能
    - MAINTENANCE: 設置済みだが貸出・返却とも停止中
    - OUT_OF_SERVICE: 未設置・撤去
    """
    OPERATIONAL = "operational"
    INSTALLED = "installed"
    MAINTENANCE = "maintenance"
    OUT_OF_SERVICE = "out_of_service"


class DataFreshness(str, Enum):
    """リアルタイムデータの鮮度（最終更新からの経過時間で分類）"""
    FRESH = "fresh"            # 5分未満
    RECENT = "recent"          # 15分未満
    STALE = "stale"            # 60分未満
    VERY_STALE = "very_stale"  # それ以上

    @classmethod
    def from_age(cls, age_minutes: float) -> "DataFreshness":
        if age_minutes < 5:
            return cls.FRESH
        if age_minutes < 15:
            return cls.RECENT
        if age_minutes < 60:
            return cls.STALE
        return cls.VERY_STALE


class BikeTypeFilter(str, Enum):
    """自転車種別フィルタ"""
    MECHANICAL = "mechanical"
    ELECTRIC = "electric"
    ANY = "any"


class DataSource(str, Enum):
    """データの出所"""
    LIVE = "live"                # 今回上流から取得
    CACHE = "cache"              # 有効期限内のキャッシュ
    STALE_CACHE = "stale_cache"  # 取得失敗のため期限切れキャッシュを使用
    UNAVAILABLE = "unavailable"  # 取得失敗かつキャッシュなし（リアルタイムのみ）


# =============================================================================
# 値オブジェクト
# =============================================================================

class Coordinates(BaseModel):
    """
    座標（10進度）

    範囲チェックは app.services.geo で行う。ここでは値を保持するだけ。
    """
    latitude: float = Field(..., description="緯度", examples=[48.8566])
    longitude: float = Field(..., description="経度", examples=[2.3522])

    class Config:
        frozen = True

    def is_valid(self) -> bool:
        """緯度 [-90, 90]、経度 [-180, 180] の範囲内か"""
        return -90.0 <= self.latitude <= 90.0 and -180.0 <= self.longitude <= 180.0


class ServiceCapabilities(BaseModel):
    """ステーションの付帯サービス"""
    accepts_credit_card: bool = False
    has_charging_station: bool = False
    is_virtual_station: bool = False

    class Config:
        frozen = True


class BikeAvailability(BaseModel):
    """種別ごとの利用可能台数"""
    mechanical: int = Field(0, ge=0, description="機械式自転車の台数")
    electric: int = Field(0, ge=0, description="電動アシスト自転車の台数")

    class Config:
        frozen = True

    @property
    def total(self) -> int:
        return self.mechanical + self.electric

    def has_any(self) -> bool:
        return self.total > 0

    def count(self, bike_type: BikeTypeFilter) -> int:
        """フィルタに該当する台数"""
        if bike_type == BikeTypeFilter.MECHANICAL:
            return self.mechanical
        if bike_type == BikeTypeFilter.ELECTRIC:
            return self.electric
        return self.total

    def has_kind(self, bike_type: BikeTypeFilter) -> bool:
        return self.count(bike_type) > 0


# =============================================================================
# ステーション静的情報
# =============================================================================

class StationReference(BaseModel):
    """
    ステーションの静的情報（velib-emplacement-des-stations の1レコード）

    Attributes:
        station_code (str): ステーションコード（一意キー）
        name (str): ステーション名
        coordinates (Coordinates): 位置
        capacity (int): 収容台数（1〜MAX_STATION_CAPACITY）
        capabilities (ServiceCapabilities): 付帯サービス
    """
    station_code: str = Field(..., min_length=1, examples=["16107"])
    name: str = Field(..., examples=["Benjamin Godard - Victor Hugo"])
    coordinates: Coordinates
    capacity: int = Field(..., gt=0, le=MAX_STATION_CAPACITY, examples=[35])
    capabilities: ServiceCapabilities = Field(default_factory=ServiceCapabilities)

    class Config:
        frozen = True


# =============================================================================
# リアルタイム情報
# =============================================================================

class RealTimeStatus(BaseModel):
    """
    ステーションのリアルタイム状態（velib-disponibilite-en-temps-reel の1レコード）

    取得サイクルごとに丸ごと作り直され、既存インスタンスは変更しない。
    """
    station_code: str
    bikes: BikeAvailability
    available_docks: int = Field(..., ge=0)
    status: StationStatus
    renting_enabled: bool = True
    returning_enabled: bool = True
    last_updated: datetime
    data_freshness: DataFreshness

    class Config:
        frozen = True

    @classmethod
    def create(
        cls,
        station_code: str,
        bikes: BikeAvailability,
        available_docks: int,
        status: StationStatus,
        last_updated: datetime,
        renting_enabled: bool = True,
        returning_enabled: bool = True,
        now: Optional[datetime] = None,
    ) -> "RealTimeStatus":
        """最終更新時刻から鮮度を算出して生成"""
        now = now or datetime.now(timezone.utc)
        age_minutes = (now - last_updated).total_seconds() / 60
        return cls(
            station_code=station_code,
            bikes=bikes,
            available_docks=available_docks,
            status=status,
            renting_enabled=renting_enabled,
            returning_enabled=returning_enabled,
            last_updated=last_updated,
            data_freshness=DataFreshness.from_age(age_minutes),
        )


# =============================================================================
# 統合ステーション
# =============================================================================

class Station(BaseModel):
    """
    統合ステーション（静的情報 + 任意のリアルタイム情報）

    real_time が None の場合は「状態不明」として扱う:
    - 稼働中とみなす（is_operational は True）
    - 自転車・ドックの空きは確認できないため、空き条件は満たさない
    """
    reference: StationReference
    real_time: Optional[RealTimeStatus] = None

    class Config:
        frozen = True

    @property
    def station_code(self) -> str:
        return self.reference.station_code

    @property
    def data_freshness(self) -> Optional[DataFreshness]:
        if self.real_time is None:
            return None
        return self.real_time.data_freshness

    def with_real_time(self, real_time: RealTimeStatus) -> "Station":
        return Station(reference=self.reference, real_time=real_time)

    def is_operational(self) -> bool:
        if self.real_time is None:
            return True
        return self.real_time.status == StationStatus.OPERATIONAL

    def has_available_bikes(self, bike_type: BikeTypeFilter = BikeTypeFilter.ANY, min_bikes: int = 1) -> bool:
        if self.real_time is None:
            return False
        return self.real_time.bikes.count(bike_type) >= max(min_bikes, 1)

    def has_available_docks(self, min_docks: int = 1) -> bool:
        if self.real_time is None:
            return False
        return self.real_time.available_docks >= min_docks

    def validate_capacity(self) -> None:
        """
        台数の整合性チェック

        Raises:
            CapacityInvariantError: 自転車 + ドック が収容台数を超える場合
        """
        # models → services の循環インポートを避けるためローカルインポート
        from app.services.errors import CapacityInvariantError

        if self.real_time is None:
            return
        bikes = self.real_time.bikes.total
        docks = self.real_time.available_docks
        if bikes + docks > self.reference.capacity:
            raise CapacityInvariantError(self.station_code, bikes, docks, self.reference.capacity)


class StationSnapshot(BaseModel):
    """
    1回のクエリで使用する統合ステーションのスナップショット

    Attributes:
        stations: 統合済みステーション
        reference_source: 静的情報の出所
        realtime_source: リアルタイム情報の出所（未要求時は None）
        realtime_error: リアルタイム取得に失敗した場合のエラーコード
    """
    stations: list[Station]
    reference_source: DataSource
    realtime_source: Optional[DataSource] = None
    realtime_error: Optional[str] = None

    @property
    def realtime_available(self) -> bool:
        return self.realtime_source not in (None, DataSource.UNAVAILABLE)
