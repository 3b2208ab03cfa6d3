"""
app/services/cache.py

TTL付きインメモリキャッシュ

エントリごとに有効期限を持つ汎用キャッシュ。期限切れ以外の追い出しは行わない。
期限切れエントリは cleanup_expired() の実行前でも get() からは見えない。

並行性:
- 読み取りは互いにブロックしない（複数の読み手が同時に進行可能）
- 書き込みは排他的（読み手・他の書き手と同時には実行されない）
- いずれもI/Oを伴わない短いクリティカルセクションで、イベントループを止めない

参照:
- threading.Condition: https://docs.python.org/3/library/threading.html#condition-objects
"""
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Generic, Hashable, Iterator, Mapping, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


# =============================================================================
# 読み書きロック
# =============================================================================

class ReadWriteLock:
    """
    複数読み手 / 単一書き手ロック

    書き手が待機している間は新しい読み手を待たせる（書き手の飢餓防止）。
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# =============================================================================
# キャッシュエントリ
# =============================================================================

@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """
    キャッシュエントリ

    Attributes:
        value: キャッシュデータ
        expires_at: 有効期限（clock() と同じ基準の秒数）
    """
    value: V
    expires_at: float

    def is_valid(self, now: float) -> bool:
        """キャッシュが有効かどうか"""
        return now < self.expires_at


# =============================================================================
# TTLキャッシュ
# =============================================================================

class TTLCache(Generic[K, V]):
    """
    TTL付きインメモリキャッシュ

    Attributes:
        default_ttl (timedelta): insert() で ttl 省略時の有効期間

    使用例:
        cache: TTLCache[str, StationReference] = TTLCache(timedelta(minutes=30))
        cache.insert("16107", reference)
        cache.get("16107")  # 期限内なら reference、期限切れなら None
    """

    def __init__(self, default_ttl: timedelta, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            default_ttl: デフォルトの有効期間
            clock: 単調増加する時刻関数（テストでは差し替え可能）
        """
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[K, CacheEntry[V]] = {}
        self._lock = ReadWriteLock()

    def _expires_at(self, ttl: Optional[timedelta]) -> float:
        ttl = self.default_ttl if ttl is None else ttl
        return self._clock() + ttl.total_seconds()

    def get(self, key: K) -> Optional[V]:
        """有効なエントリの値を返す。存在しないか期限切れなら None"""
        now = self._clock()
        with self._lock.read():
            entry = self._entries.get(key)
        if entry is None or not entry.is_valid(now):
            return None
        return entry.value

    def insert(self, key: K, value: V, ttl: Optional[timedelta] = None) -> None:
        entry = CacheEntry(value, self._expires_at(ttl))
        with self._lock.write():
            self._entries[key] = entry

    def replace_all(self, items: Mapping[K, V], ttl: Optional[timedelta] = None) -> None:
        """
        全エントリを入れ替える

        フィード1回分の取得結果を丸ごと差し替える用途。
        読み手が古いデータと新しいデータの混在を見ることはない。
        """
        expires_at = self._expires_at(ttl)
        entries = {key: CacheEntry(value, expires_at) for key, value in items.items()}
        with self._lock.write():
            self._entries = entries

    def remove(self, key: K) -> Optional[V]:
        with self._lock.write():
            entry = self._entries.pop(key, None)
        return entry.value if entry is not None else None

    def snapshot(self) -> dict[K, V]:
        """有効なエントリのみを辞書で返す"""
        now = self._clock()
        with self._lock.read():
            items = list(self._entries.items())
        return {key: entry.value for key, entry in items if entry.is_valid(now)}

    def cleanup_expired(self) -> int:
        """
        期限切れエントリを削除

        Returns:
            削除したエントリ数
        """
        now = self._clock()
        with self._lock.write():
            expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def size(self) -> int:
        """格納中のエントリ数（未掃除の期限切れエントリを含む）"""
        with self._lock.read():
            return len(self._entries)

    def clear(self) -> None:
        with self._lock.write():
            self._entries.clear()
