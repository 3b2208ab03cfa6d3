"""
tests/test_retry.py

RetryPolicy と CircuitBreaker のユニットテスト
"""
import asyncio

import pytest

from app.services.errors import (
    CircuitOpenError,
    FeedParseError,
    OperationTimeoutError,
    RateLimitedError,
    RetryExhaustedError,
    SearchRadiusTooLargeError,
    UpstreamHTTPError,
)
from app.services.metrics import ErrorMetrics
from app.services.retry import CircuitBreaker, CircuitState, RetryConfig, RetryPolicy
from tests.conftest import FakeClock, RecordingSleep


URL = "https://example.test/records"


def make_policy(sleep=None, metrics=None, **config) -> RetryPolicy:
    defaults = {"max_attempts": 3, "base_delay": 1.0, "max_delay": 10.0, "use_jitter": False}
    defaults.update(config)
    return RetryPolicy(RetryConfig(**defaults), metrics=metrics, sleep=sleep or RecordingSleep())


class CountingOperation:
    """指定回数失敗してから成功する処理"""

    def __init__(self, error: Exception, failures: int = 10**6, result="ok"):
        self.error = error
        self.failures = failures
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


# =============================================================================
# 待機時間の計算
# =============================================================================

class TestCalculateDelay:
    """バックオフ計算のテスト"""

    def test_exponential_backoff_capped(self):
        """base=1s, max=10s → 1, 2, 4, 8, 10, 10"""
        policy = make_policy()
        delays = [policy.calculate_delay(n) for n in range(6)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_large_attempt_does_not_overflow(self):
        policy = make_policy()
        assert policy.calculate_delay(5000) == 10.0

    def test_jitter_adds_at_most_25_percent(self):
        policy = RetryPolicy(
            RetryConfig(base_delay=2.0, max_delay=60.0, use_jitter=True),
            random_fn=lambda: 0.999999,
        )
        delay = policy.calculate_delay(1)
        assert 4.0 <= delay <= 5.0

    def test_jitter_zero_random(self):
        policy = RetryPolicy(
            RetryConfig(base_delay=2.0, max_delay=60.0, use_jitter=True),
            random_fn=lambda: 0.0,
        )
        assert policy.calculate_delay(1) == 4.0

    def test_retry_after_hint_takes_precedence(self):
        """Retry-After ヒントがあればバックオフより優先"""
        policy = make_policy()
        error = RateLimitedError(URL, retry_after=5)
        assert policy.calculate_delay(0, error) == 5.0

    def test_retry_after_hint_capped_at_max_delay(self):
        policy = make_policy()
        error = RateLimitedError(URL, retry_after=120)
        assert policy.calculate_delay(0, error) == 10.0


# =============================================================================
# リトライ判定
# =============================================================================

class TestIsRetryable:
    """エラー分類のテスト"""

    @pytest.mark.parametrize("error", [
        UpstreamHTTPError("boom", URL),
        UpstreamHTTPError("boom", URL, status_code=503),
        UpstreamHTTPError("boom", URL, status_code=429),
        RateLimitedError(URL),
        OperationTimeoutError("fetch", 1.0),
        RuntimeError("unexpected"),
    ])
    def test_retryable(self, error):
        assert RetryPolicy.is_retryable(error)

    @pytest.mark.parametrize("error", [
        UpstreamHTTPError("not found", URL, status_code=404),
        FeedParseError("bad json", context=URL),
        SearchRadiusTooLargeError(8000, 5000),
        CircuitOpenError(10.0),
    ])
    def test_not_retryable(self, error):
        assert not RetryPolicy.is_retryable(error)


# =============================================================================
# 実行
# =============================================================================

class TestExecute:
    """execute のテスト"""

    async def test_success_first_try(self):
        sleep = RecordingSleep()
        policy = make_policy(sleep)
        operation = CountingOperation(UpstreamHTTPError("x", URL), failures=0)

        assert await policy.execute(operation) == "ok"
        assert operation.calls == 1
        assert sleep.delays == []

    async def test_success_after_retries(self):
        sleep = RecordingSleep()
        policy = make_policy(sleep)
        operation = CountingOperation(UpstreamHTTPError("x", URL, status_code=502), failures=2)

        assert await policy.execute(operation) == "ok"
        assert operation.calls == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_retryable_error_invoked_max_attempts_plus_one(self):
        """常にリトライ可能なエラー → max_attempts + 1 回実行して RetryExhaustedError"""
        sleep = RecordingSleep()
        metrics = ErrorMetrics()
        policy = make_policy(sleep, metrics=metrics)
        last = UpstreamHTTPError("unavailable", URL, status_code=503)
        operation = CountingOperation(last)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await policy.execute(operation, operation_name="reference fetch")

        assert operation.calls == 4
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert exc_info.value.attempts == 4
        assert exc_info.value.last_error is last
        assert exc_info.value.__cause__ is last
        assert metrics.snapshot() == {"RETRY_EXHAUSTED": 1}

    async def test_non_retryable_error_invoked_once(self):
        """リトライ不可のエラー → 1回だけ実行してそのまま送出"""
        sleep = RecordingSleep()
        metrics = ErrorMetrics()
        policy = make_policy(sleep, metrics=metrics)
        operation = CountingOperation(FeedParseError("bad json", context=URL))

        with pytest.raises(FeedParseError):
            await policy.execute(operation)

        assert operation.calls == 1
        assert sleep.delays == []
        assert metrics.snapshot() == {"PARSE_ERROR": 1}

    async def test_unknown_exception_is_retried(self):
        policy = make_policy(max_attempts=2)
        operation = CountingOperation(RuntimeError("flaky"), failures=1)

        assert await policy.execute(operation) == "ok"
        assert operation.calls == 2

    async def test_zero_max_attempts_runs_once(self):
        policy = make_policy(max_attempts=0)
        operation = CountingOperation(UpstreamHTTPError("x", URL))

        with pytest.raises(RetryExhaustedError):
            await policy.execute(operation)
        assert operation.calls == 1

    async def test_rate_limit_waits_retry_after(self):
        sleep = RecordingSleep()
        policy = make_policy(sleep)
        operation = CountingOperation(RateLimitedError(URL, retry_after=3), failures=1)

        await policy.execute(operation)
        assert sleep.delays == [3.0]

    async def test_attempt_timeout_surfaces_as_timeout(self):
        """最後の試行がタイムアウトした場合は OperationTimeoutError"""
        policy = make_policy(max_attempts=1, attempt_timeout=0.01)
        calls = 0

        async def hang():
            nonlocal calls
            calls += 1
            await asyncio.sleep(10)

        with pytest.raises(OperationTimeoutError):
            await policy.execute(hang, operation_name="hang")
        assert calls == 2

    async def test_timeout_then_success(self):
        policy = make_policy(max_attempts=2, attempt_timeout=0.05)
        calls = 0

        async def slow_once():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(10)
            return "done"

        assert await policy.execute(slow_once) == "done"
        assert calls == 2


# =============================================================================
# サーキットブレーカー
# =============================================================================

class TestCircuitBreaker:
    """サーキットブレーカーのテスト"""

    async def _fail(self, breaker: CircuitBreaker, times: int):
        for _ in range(times):
            with pytest.raises(UpstreamHTTPError):
                await breaker.call(CountingOperation(UpstreamHTTPError("x", URL)))

    async def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=FakeClock())
        await self._fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

        await self._fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 3

    async def test_open_circuit_fails_fast(self):
        """OPEN の間は処理を呼び出さない"""
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=FakeClock())
        await self._fail(breaker, 1)

        operation = CountingOperation(UpstreamHTTPError("x", URL), failures=0)
        with pytest.raises(CircuitOpenError):
            await breaker.call(operation)
        assert operation.calls == 0

    async def test_half_open_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=clock)
        await self._fail(breaker, 1)

        clock.advance(30)
        operation = CountingOperation(UpstreamHTTPError("x", URL), failures=0)
        assert await breaker.call(operation) == "ok"
        assert operation.calls == 1
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0

    async def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=clock)
        await self._fail(breaker, 2)

        clock.advance(31)
        await self._fail(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        # 新しい期限までは拒否
        clock.advance(29)
        with pytest.raises(CircuitOpenError):
            await breaker.call(CountingOperation(UpstreamHTTPError("x", URL), failures=0))

    async def test_success_resets_counter(self):
        breaker = CircuitBreaker(failure_threshold=3, clock=FakeClock())
        await self._fail(breaker, 2)
        await breaker.call(CountingOperation(UpstreamHTTPError("x", URL), failures=0))
        assert breaker.consecutive_failures == 0

        await self._fail(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    async def test_circuit_open_is_not_retried(self):
        """リトライポリシー経由でも OPEN は即座に失敗"""
        sleep = RecordingSleep()
        policy = make_policy(sleep)
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=FakeClock())
        await self._fail(breaker, 1)

        operation = CountingOperation(UpstreamHTTPError("x", URL), failures=0)
        with pytest.raises(CircuitOpenError):
            await policy.execute(lambda: breaker.call(operation))
        assert operation.calls == 0
        assert sleep.delays == []

    async def test_attempt_timeout_counts_as_failure(self):
        """応答しない上流でもタイムアウトを失敗として数えてオープンする"""
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=30, clock=FakeClock())
        policy = make_policy(max_attempts=3, attempt_timeout=0.01)
        calls = 0

        async def hang():
            nonlocal calls
            calls += 1
            await asyncio.sleep(10)

        with pytest.raises(CircuitOpenError):
            await policy.execute(hang, operation_name="hang", circuit_breaker=breaker)

        assert breaker.state == CircuitState.OPEN
        assert breaker.consecutive_failures == 2
        # 2回タイムアウトでオープン、3回目は呼び出さずに拒否
        assert calls == 2
