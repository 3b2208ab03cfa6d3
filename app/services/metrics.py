"""
app/services/metrics.py

エラーメトリクス

プロセス全体のグローバル変数ではなく、アプリケーションが所有する
インスタンスとして各サービスに注入する。テストではローカルの
インスタンスを渡して検証できる。
"""
import threading
from collections import Counter

from app.services.errors import error_code


class ErrorMetrics:
    """
    エラーコードごとの発生回数カウンタ（スレッドセーフ）

    使用例:
        metrics = ErrorMetrics()
        metrics.record(error)
        metrics.snapshot()  # {"HTTP_ERROR": 2}
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()

    def record(self, error: BaseException) -> None:
        with self._lock:
            self._counts[error_code(error)] += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()
