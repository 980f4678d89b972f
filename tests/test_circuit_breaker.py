from provider_gateway.circuit_breaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_opens_after_threshold_consecutive_failures():
    cb = CircuitBreaker("t", failure_threshold=5, reset_timeout_seconds=30, clock=FakeClock())
    for _ in range(4):
        cb.record_failure()
        assert cb.state is CircuitState.CLOSED
        assert cb.is_available()
    cb.record_failure()
    assert cb.state is CircuitState.OPEN
    assert not cb.is_available()


def test_success_resets_failure_count():
    cb = CircuitBreaker("t", failure_threshold=3, clock=FakeClock())
    cb.record_failure()
    cb.record_failure()
    cb.record_success()
    assert cb.failure_count == 0
    cb.record_failure()
    cb.record_failure()
    assert cb.state is CircuitState.CLOSED


def test_half_open_after_cooldown_then_closes_on_success():
    clock = FakeClock()
    cb = CircuitBreaker("t", failure_threshold=1, reset_timeout_seconds=30, clock=clock)
    cb.record_failure()
    assert not cb.is_available()

    clock.now += 30
    assert not cb.is_available()

    clock.now += 0.5
    assert cb.is_available()
    assert cb.state is CircuitState.HALF_OPEN

    cb.record_success()
    assert cb.state is CircuitState.CLOSED
    assert cb.failure_count == 0


def test_half_open_failure_reopens():
    clock = FakeClock()
    cb = CircuitBreaker("t", failure_threshold=2, reset_timeout_seconds=10, clock=clock)
    cb.record_failure()
    cb.record_failure()
    clock.now += 11
    assert cb.is_available()
    cb.record_failure()
    assert cb.state is CircuitState.OPEN
    assert not cb.is_available()


def test_retry_after_counts_down_while_open():
    clock = FakeClock()
    cb = CircuitBreaker("t", failure_threshold=1, reset_timeout_seconds=30, clock=clock)
    assert cb.retry_after_seconds() is None
    cb.record_failure()
    assert cb.retry_after_seconds() == 30
    clock.now += 29.5
    assert cb.retry_after_seconds() == 1


def test_snapshot_reports_state():
    cb = CircuitBreaker("t", failure_threshold=1, clock=FakeClock(5.0))
    cb.record_failure()
    snap = cb.snapshot()
    assert snap["state"] == "OPEN"
    assert snap["failure_count"] == 1
    assert snap["last_failure_at"] == 5.0
