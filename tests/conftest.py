"""
tests/conftest.py

pytest共通フィクスチャ

参照:
- pytest fixtures: https://docs.pytest.org/en/stable/fixture.html
- httpx TestClient: https://www.python-httpx.org/advanced/testing/
- FastAPI Testing: https://fastapi.tiangolo.com/tutorial/testing/
"""
import pytest
from unittest.mock import AsyncMock
from datetime import datetime, timezone
from typing import Optional

from httpx import AsyncClient, ASGITransport

from app.main import app
from app.models import (
    BikeAvailability,
    Coordinates,
    DataSource,
    RealTimeStatus,
    Station,
    StationReference,
    StationSnapshot,
    StationStatus,
)
from app.services.metrics import ErrorMetrics
from app.services.station_query import StationQueryService
from app.services.velib_client import VelibClient


# =============================================================================
# テスト用定数
# =============================================================================

# パリ市内の座標（テスト用）
PARIS_CENTER = (48.8566, 2.3522)
LOUVRE = (48.8606, 2.3376)
BASTILLE = (48.8532, 2.3692)
GARE_DU_NORD = (48.8809, 2.3553)

# 対応エリア外の座標（エラーテスト用）
LONDON = (51.5074, -0.1278)
# 矩形内だがパリ市庁舎から50km超（南西の角付近）
OUTSIDE_RADIUS = (48.20, 1.60)

# 緯度1度あたりの距離（地球半径 6,371km）
METERS_PER_DEGREE_LAT = 111_194.93


def north_of(point: tuple[float, float], meters: float) -> tuple[float, float]:
    """point から真北に meters 離れた地点"""
    return (point[0] + meters / METERS_PER_DEGREE_LAT, point[1])


def south_of(point: tuple[float, float], meters: float) -> tuple[float, float]:
    """point から真南に meters 離れた地点"""
    return (point[0] - meters / METERS_PER_DEGREE_LAT, point[1])


# =============================================================================
# テストデータ生成
# =============================================================================

def make_reference(
    code: str,
    name: str = "Test Station",
    location: tuple[float, float] = PARIS_CENTER,
    capacity: int = 20,
) -> StationReference:
    return StationReference(
        station_code=code,
        name=name,
        coordinates=Coordinates(latitude=location[0], longitude=location[1]),
        capacity=capacity,
    )


def make_realtime(
    code: str,
    mechanical: int = 5,
    electric: int = 0,
    docks: int = 10,
    status: StationStatus = StationStatus.OPERATIONAL,
) -> RealTimeStatus:
    return RealTimeStatus.create(
        station_code=code,
        bikes=BikeAvailability(mechanical=mechanical, electric=electric),
        available_docks=docks,
        status=status,
        last_updated=datetime.now(timezone.utc),
    )


def make_station(
    code: str,
    name: str = "Test Station",
    location: tuple[float, float] = PARIS_CENTER,
    capacity: int = 20,
    mechanical: int = 5,
    electric: int = 0,
    docks: Optional[int] = None,
    status: StationStatus = StationStatus.OPERATIONAL,
    with_realtime: bool = True,
) -> Station:
    """
    テスト用ステーション

    docks 省略時は 収容台数 - 自転車台数。
    """
    reference = make_reference(code, name, location, capacity)
    if not with_realtime:
        return Station(reference=reference)
    if docks is None:
        docks = capacity - mechanical - electric
    return Station(
        reference=reference,
        real_time=make_realtime(code, mechanical, electric, docks, status),
    )


class FakeClock:
    """手動で進める単調時計"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """待機せずに待機秒数だけ記録する sleep 関数"""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


# =============================================================================
# モッククライアント
# =============================================================================

def make_mock_client(
    stations: list[Station],
    realtime_available: bool = True,
) -> AsyncMock:
    """
    VelibClientのモック

    get_station_snapshot / get_all_stations は stations を返す。
    get_station_by_code はコードで検索して返す。
    """
    client = AsyncMock(spec=VelibClient)
    snapshot = StationSnapshot(
        stations=stations,
        reference_source=DataSource.CACHE,
        realtime_source=DataSource.CACHE if realtime_available else DataSource.UNAVAILABLE,
        realtime_error=None if realtime_available else "CACHE_UNAVAILABLE",
    )
    by_code = {station.station_code: station for station in stations}

    client.get_station_snapshot.return_value = snapshot
    client.get_all_stations.return_value = stations
    client.get_station_by_code.side_effect = lambda code, include_realtime=True: by_code.get(code)
    client.test_connectivity.return_value = DataSource.LIVE
    client.cache_stats.return_value = (len(stations), len(stations))
    return client


@pytest.fixture
def sample_stations():
    """ルーヴル周辺のテスト用ステーション"""
    return [
        make_station("1001", "Louvre - Rivoli", north_of(LOUVRE, 35), mechanical=8, electric=4, docks=8),
        make_station("1002", "Palais Royal", south_of(LOUVRE, 40), mechanical=2, electric=0),
        make_station("1003", "Châtelet", north_of(LOUVRE, 600), mechanical=10, electric=5, docks=5),
        make_station("1004", "Rivoli - Musée du Louvre", south_of(LOUVRE, 120), status=StationStatus.MAINTENANCE),
        make_station("2001", "Bastille - Faubourg", BASTILLE, mechanical=0, electric=6),
        make_station("3001", "Gare du Nord", GARE_DU_NORD, with_realtime=False),
    ]


@pytest.fixture
def mock_velib_client(sample_stations):
    return make_mock_client(sample_stations)


@pytest.fixture
def metrics():
    return ErrorMetrics()


# =============================================================================
# FastAPIテストクライアント
# =============================================================================

@pytest.fixture
async def async_client(mock_velib_client, metrics):
    """
    非同期HTTPテストクライアント

    app.stateに必要なオブジェクトを注入してテスト実行。
    """
    app.state.metrics = metrics
    app.state.velib_client = mock_velib_client
    app.state.query_service = StationQueryService(mock_velib_client, metrics=metrics)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
