import pytest

from utils import retry
from utils.retry import RetryPolicy, call_with_retry, retry_on_exception


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    sleeps = []
    monkeypatch.setattr(retry.time, "sleep", sleeps.append)
    return sleeps


class _Flaky:
    def __init__(self, failures, exc=ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("boom")
        return value


def test_delays_back_off_exponentially():
    assert list(RetryPolicy(max_attempts=4, initial_delay=1.0, backoff_factor=2.0, jitter=0.0).delays()) == [1.0, 2.0, 4.0]


def test_single_attempt_has_no_delays():
    assert list(RetryPolicy(max_attempts=1).delays()) == []


def test_succeeds_after_transient_failures(no_sleep):
    func = _Flaky(failures=2)
    policy = RetryPolicy(max_attempts=3, initial_delay=0.5, jitter=0.0)

    assert call_with_retry(func, "ok", policy=policy, exceptions=(ConnectionError,)) == "ok"
    assert func.calls == 3
    assert no_sleep == [0.5, 1.0]


def test_gives_up_after_max_attempts():
    func = _Flaky(failures=5)
    with pytest.raises(ConnectionError):
        call_with_retry(func, "ok", policy=RetryPolicy(max_attempts=3), exceptions=(ConnectionError,))
    assert func.calls == 3


def test_rejected_exception_is_raised_immediately():
    func = _Flaky(failures=1, exc=TimeoutError)
    with pytest.raises(TimeoutError):
        call_with_retry(func, "ok", exceptions=(TimeoutError,), retry_if=lambda e: False)
    assert func.calls == 1


def test_unlisted_exception_is_not_retried():
    func = _Flaky(failures=1, exc=KeyError)
    with pytest.raises(KeyError):
        call_with_retry(func, "ok", exceptions=(ConnectionError,))
    assert func.calls == 1


def test_decorator_form():
    func = _Flaky(failures=1)
    wrapped = retry_on_exception(exceptions=(ConnectionError,), max_attempts=2, initial_delay=0.0)(func)
    assert wrapped("done") == "done"
    assert func.calls == 2
