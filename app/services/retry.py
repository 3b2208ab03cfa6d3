"""
app/services/retry.py

リトライポリシーとサーキットブレーカー

上流API呼び出しなど失敗しうる非同期処理を包み、以下を提供する:
- エラー分類に基づくリトライ判定（通信エラー・レート制限・内部エラーは再試行、
  バリデーション・未検出・パースエラーは即座に失敗）
- 指数バックオフ（base_delay * 2^attempt、max_delay で頭打ち、任意で最大25%のジッタ）
- Retry-After ヒントの優先
- 試行ごとのタイムアウト（バックオフとは別の壁時計上限）
- 連続失敗でオープンするサーキットブレーカー

待機は asyncio.sleep で行うため、他のリクエストの処理は止めない。

参照:
- asyncio.wait_for: https://docs.python.org/3/library/asyncio-task.html#asyncio.wait_for
- Exponential backoff and jitter: https://aws.amazon.com/blogs/architecture/exponential-backoff-and-jitter/
"""
import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from app.services.errors import (
    CircuitOpenError,
    OperationTimeoutError,
    RetryExhaustedError,
    is_retryable,
)
from app.services.metrics import ErrorMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T")

# 指数の上限（float のオーバーフロー防止。2^32 秒は実質無限大）
_MAX_EXPONENT = 32

# ジッタの最大比率
JITTER_RATIO = 0.25


# =============================================================================
# 設定
# =============================================================================

@dataclass
class RetryConfig:
    """
    リトライ設定

    Attributes:
        max_attempts: リトライ回数（初回を除く）。総試行回数は max_attempts + 1
        base_delay: バックオフの基準秒数
        max_delay: バックオフの上限秒数
        use_jitter: 最大25%のランダムな待機時間を加算するか
        attempt_timeout: 1回の試行の制限秒数（None で無制限）
    """
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    use_jitter: bool = True
    attempt_timeout: Optional[float] = 30.0


# =============================================================================
# リトライポリシー
# =============================================================================

class RetryPolicy:
    """
    リトライポリシー

    使用例:
        policy = RetryPolicy(RetryConfig(max_attempts=3))
        records = await policy.execute(lambda: fetcher.fetch_page(url, 0, 100))

        # サーキットブレーカー併用
        records = await policy.execute(fetch, circuit_breaker=breaker)
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        metrics: Optional[ErrorMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        random_fn: Callable[[], float] = random.random,
    ):
        """
        Args:
            config: リトライ設定（省略時はデフォルト）
            metrics: 最終的に失敗したエラーを記録するメトリクス
            sleep: 待機関数（テストでは記録用の関数に差し替え）
            random_fn: [0, 1) の乱数関数
        """
        self.config = config or RetryConfig()
        self._metrics = metrics
        self._sleep = sleep
        self._random = random_fn

    @staticmethod
    def is_retryable(error: BaseException) -> bool:
        return is_retryable(error)

    def calculate_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """
        attempt 回目（0始まり）の失敗後に待機する秒数

        エラーが Retry-After ヒントを持つ場合はそれを優先する（max_delay で頭打ち）。
        """
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            return min(float(retry_after), self.config.max_delay)

        delay = min(self.config.base_delay * 2 ** min(attempt, _MAX_EXPONENT), self.config.max_delay)
        if self.config.use_jitter:
            delay += delay * JITTER_RATIO * self._random()
        return delay

    async def _attempt(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str,
        circuit_breaker: Optional["CircuitBreaker"],
    ) -> T:
        async def timed() -> T:
            timeout = self.config.attempt_timeout
            if timeout is None:
                return await operation()
            try:
                return await asyncio.wait_for(operation(), timeout)
            except asyncio.TimeoutError:
                raise OperationTimeoutError(operation_name, timeout) from None

        # タイムアウトはブレーカーの内側で判定し、失敗として数えさせる
        if circuit_breaker is None:
            return await timed()
        return await circuit_breaker.call(timed)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        circuit_breaker: Optional["CircuitBreaker"] = None,
    ) -> T:
        """
        リトライ付きで処理を実行

        Args:
            operation: 引数なしで awaitable を返す関数
            operation_name: ログ・エラー用の処理名
            circuit_breaker: 各試行を通すサーキットブレーカー（試行のタイムアウトも失敗として数える）

        Returns:
            operation の戻り値

        Raises:
            リトライ不可のエラー: 1回目の失敗でそのまま送出
            OperationTimeoutError: 最後の試行がタイムアウトした場合
            RetryExhaustedError: すべての試行がリトライ可能なエラーで失敗した場合
        """
        max_attempts = self.config.max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(max_attempts + 1):
            try:
                result = await self._attempt(operation, operation_name, circuit_breaker)
            except Exception as e:
                last_error = e
            else:
                if attempt > 0:
                    logger.info("%s succeeded after %d retries", operation_name, attempt)
                return result

            if not self.is_retryable(last_error):
                logger.info("%s failed with non-retryable error: %s", operation_name, last_error)
                self._record(last_error)
                raise last_error

            if attempt >= max_attempts:
                break

            delay = self.calculate_delay(attempt, last_error)
            logger.warning(
                "%s attempt %d/%d failed, retrying in %.2fs: %s",
                operation_name, attempt + 1, max_attempts + 1, delay, last_error,
            )
            await self._sleep(delay)

        logger.warning("%s exhausted %d attempts: %s", operation_name, max_attempts + 1, last_error)
        if isinstance(last_error, OperationTimeoutError):
            self._record(last_error)
            raise last_error

        exhausted = RetryExhaustedError(operation_name, max_attempts + 1, last_error)
        self._record(exhausted)
        raise exhausted from last_error

    def _record(self, error: BaseException) -> None:
        if self._metrics is not None:
            self._metrics.record(error)


# =============================================================================
# サーキットブレーカー
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    サーキットブレーカー

    状態遷移:
        CLOSED --(連続 failure_threshold 回失敗)--> OPEN
        OPEN --(recovery_timeout 経過後の最初の呼び出し)--> HALF_OPEN
        HALF_OPEN --(試行成功)--> CLOSED / --(試行失敗)--> OPEN（期限を更新）

    OPEN の間は処理を呼び出さず CircuitOpenError を送出する。
    HALF_OPEN で許可する試行は1件のみで、結果が出るまで他の呼び出しは拒否する。
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._recovery_deadline = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._before_call()
        try:
            result = await operation()
        except Exception:
            self._on_failure()
            raise
        except BaseException:
            # キャンセル時は結果なしとして試行枠だけ解放
            self._release_trial()
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        with self._lock:
            now = self._clock()
            if self._state == CircuitState.OPEN:
                if now < self._recovery_deadline:
                    raise CircuitOpenError(self._recovery_deadline - now)
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = True
                logger.info("Circuit half-open, allowing trial call")
            elif self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(0.0)
                self._trial_in_flight = True

    def _on_success(self) -> None:
        with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit closed")
            self._state = CircuitState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False

    def _on_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._trial_in_flight = False
            if self._state == CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
                self._state = CircuitState.OPEN
                self._recovery_deadline = self._clock() + self.recovery_timeout
                logger.warning(
                    "Circuit opened after %d consecutive failures (recovery in %.1fs)",
                    self._consecutive_failures, self.recovery_timeout,
                )

    def _release_trial(self) -> None:
        with self._lock:
            self._trial_in_flight = False
