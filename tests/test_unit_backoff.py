from settlement.utils.backoff import compute_job_backoff_ms, compute_onchain_backoff_minutes


def test_job_backoff_growth_and_cap():
    # attempts already counts the failure that triggered the retry
    assert compute_job_backoff_ms(1) == 2000
    assert compute_job_backoff_ms(2) == 4000
    assert compute_job_backoff_ms(5) == 32000
    assert compute_job_backoff_ms(6) == 60000
    assert compute_job_backoff_ms(30) == 60000


def test_job_backoff_custom_policy():
    assert compute_job_backoff_ms(3, base_ms=100, factor=3, max_ms=10_000) == 2700
    assert compute_job_backoff_ms(10, base_ms=100, factor=3, max_ms=10_000) == 10_000
    assert compute_job_backoff_ms(-1, base_ms=100) == 100


def test_onchain_backoff_doubles_in_minutes_and_caps():
    assert [compute_onchain_backoff_minutes(n) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]
    assert compute_onchain_backoff_minutes(6) == 60
    assert compute_onchain_backoff_minutes(12) == 60
    assert compute_onchain_backoff_minutes(3, max_minutes=5) == 5
