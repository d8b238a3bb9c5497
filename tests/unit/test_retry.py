import pytest

from durastep.utils.retry import RetryPolicy, compute_backoff


def test_policy_allows_retries_attempts_plus_one():
    policy = RetryPolicy(max_retries=2)
    assert policy.allows(1)
    assert policy.allows(2)
    assert not policy.allows(3)

    assert not RetryPolicy().allows(1)


def test_policy_rejects_negative_retries():
    with pytest.raises(ValueError):
        RetryPolicy(max_retries=-1)


def test_delay_uses_backoff_and_never_goes_negative():
    assert RetryPolicy(backoff=lambda attempt: attempt * 2).delay_for(3) == 6
    assert RetryPolicy(backoff=lambda attempt: -5).delay_for(1) == 0


def test_compute_backoff_grows_with_jitter():
    for attempt in range(1, 5):
        delay = compute_backoff(attempt, base=2, jitter=0.5)
        assert 2 ** attempt <= delay <= 2 ** attempt + 0.5
