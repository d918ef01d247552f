import pytest

from roomrelay.retry import RetryExhausted, retry_call, retry_on
from tests.fakes import RecordingSleep


class _Flaky(Exception):
    pass


class _Operation:
    def __init__(self, failures: int, error: Exception | None = None) -> None:
        self.failures = failures
        self.error = error or _Flaky("boom")
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


@pytest.mark.anyio
async def test_retry_call_returns_after_transient_failures() -> None:
    sleep = RecordingSleep()
    op = _Operation(failures=2)
    retries: list[int] = []

    result = await retry_call(
        op,
        attempts=3,
        delay=1.5,
        retryable=retry_on(_Flaky),
        sleep=sleep,
        on_retry=lambda attempt, exc: retries.append(attempt),
    )

    assert result == "ok"
    assert op.calls == 3
    assert sleep.calls == [1.5, 1.5]
    assert retries == [1, 2]


@pytest.mark.anyio
async def test_retry_call_raises_exhausted_with_last_error() -> None:
    sleep = RecordingSleep()
    op = _Operation(failures=10)

    with pytest.raises(RetryExhausted) as exc:
        await retry_call(op, attempts=3, delay=2, retryable=retry_on(_Flaky), sleep=sleep)

    assert op.calls == 3
    assert exc.value.attempts == 3
    assert isinstance(exc.value.last_error, _Flaky)
    assert sleep.calls == [2, 2]


@pytest.mark.anyio
async def test_retry_call_propagates_non_retryable_errors() -> None:
    sleep = RecordingSleep()
    op = _Operation(failures=1, error=KeyError("nope"))

    with pytest.raises(KeyError):
        await retry_call(op, attempts=5, delay=1, retryable=retry_on(_Flaky), sleep=sleep)

    assert op.calls == 1
    assert sleep.calls == []


@pytest.mark.anyio
async def test_retry_call_rejects_zero_attempts() -> None:
    with pytest.raises(ValueError):
        await retry_call(_Operation(0), attempts=0, delay=0, retryable=retry_on(_Flaky))
