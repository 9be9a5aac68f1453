import pytest

from shared.exceptions import CircuitOpenError, ConflictError, TransientIOError
from shared.helper.CircuitBreaker import CircuitBreaker, CircuitState


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(logger, clock):
    return CircuitBreaker(logger, failure_threshold=3, reset_timeout=10.0, half_open_max_attempts=2, clock=clock)


async def ok():
    return "ok"


async def boom():
    raise TransientIOError("backend down")


async def conflict():
    raise ConflictError("duplicate")


async def trip(breaker, times):
    for _ in range(times):
        with pytest.raises(TransientIOError):
            await breaker.execute(boom, "write")


class TestCircuitBreaker:
    async def test_passes_results_through(self, breaker):
        assert await breaker.execute(ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    async def test_opens_after_threshold(self, breaker):
        await trip(breaker, 3)
        assert breaker.state == CircuitState.OPEN

        calls = []

        async def tracked():
            calls.append(1)
            return "ok"

        with pytest.raises(CircuitOpenError):
            await breaker.execute(tracked, "read")
        assert calls == []

    async def test_success_resets_failure_count(self, breaker):
        await trip(breaker, 2)
        await breaker.execute(ok)
        assert breaker.failure_count == 0
        await trip(breaker, 2)
        assert breaker.state == CircuitState.CLOSED

    async def test_excluded_errors_do_not_count(self, breaker):
        for _ in range(5):
            with pytest.raises(ConflictError):
                await breaker.execute(conflict)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    async def test_half_open_after_timeout_then_closes(self, breaker, clock):
        await trip(breaker, 3)
        clock.now += 10.0
        assert breaker.state == CircuitState.HALF_OPEN

        await breaker.execute(ok)
        assert breaker.state == CircuitState.HALF_OPEN
        await breaker.execute(ok)
        assert breaker.state == CircuitState.CLOSED

    async def test_half_open_failure_reopens(self, breaker, clock):
        await trip(breaker, 3)
        clock.now += 10.0
        await trip(breaker, 1)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await breaker.execute(ok)

    async def test_open_error_is_transient(self, breaker):
        await trip(breaker, 3)
        with pytest.raises(TransientIOError):
            await breaker.execute(ok)

    async def test_reset(self, breaker):
        await trip(breaker, 3)
        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.execute(ok) == "ok"

    def test_rejects_invalid_configuration(self, logger):
        with pytest.raises(ValueError):
            CircuitBreaker(logger, failure_threshold=0)
