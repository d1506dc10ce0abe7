import pytest

from errors import RetryTimeoutError
from retry import RetryPolicy, retry_until


def test_returns_once_check_succeeds():
    sleeps = []
    answers = iter([None, False, "ready"])
    result = retry_until(lambda: next(answers), RetryPolicy(max_attempts=5, interval=2), sleep=sleeps.append)
    assert result == "ready"
    assert sleeps == [2, 2]


def test_gives_up_after_max_attempts():
    sleeps = []
    calls = []

    def check():
        calls.append(1)
        return False

    with pytest.raises(RetryTimeoutError):
        retry_until(check, RetryPolicy(max_attempts=4, interval=1), "server files", sleep=sleeps.append)
    assert len(calls) == 4
    assert len(sleeps) == 3


def test_exceptions_count_as_misses():
    def check():
        raise OSError("share not mounted")

    with pytest.raises(RetryTimeoutError) as exc:
        retry_until(check, RetryPolicy(max_attempts=2, interval=0), sleep=lambda _: None)
    assert "share not mounted" in exc.value.message


def test_backoff_is_capped():
    policy = RetryPolicy(max_attempts=5, interval=1, backoff=3, max_interval=5)
    assert list(policy.delays()) == [1, 3, 5, 5]
    assert policy.total_wait == 14


def test_default_policy_waits_about_two_minutes():
    assert RetryPolicy().total_wait == 115
