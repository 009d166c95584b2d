import pytest
from concurrent.futures import ThreadPoolExecutor, as_completed
from security.config import EndpointRule
from security.rate_limiter import (
    EndpointRateLimiter, ScrapingTracker, TokenBucketLimiter, bucket_for_score
)
from security.reputation import ReputationScorer

NOW = 1_700_000_000.0


@pytest.fixture
def reputation():
    return ReputationScorer()


@pytest.fixture
def limiter(reputation):
    return TokenBucketLimiter(reputation)


def test_new_bucket_is_full_then_denies(limiter):
    """
    Xô mới đầy: capacity=3 -> 3 request đầu allow, request thứ 4 deny (cùng 1 thời điểm, không nạp thêm)
    """
    results = [limiter.try_consume("1.2.3.4", 3, 1.0, NOW) for _ in range(4)]

    assert [allowed for allowed, _ in results] == [True, True, True, False]
    assert results[3][1] == 1  # cần 1 giây để nạp đủ 1 token


def test_refill_is_continuous_and_capped(limiter):
    """
    Sau 0.5 giây với tốc độ 2 token/giây -> nạp đúng 1 token; chờ lâu cũng không vượt capacity
    """
    for _ in range(2):
        assert limiter.try_consume("1.2.3.4", 2, 2.0, NOW)[0] is True
    assert limiter.try_consume("1.2.3.4", 2, 2.0, NOW)[0] is False

    assert limiter.try_consume("1.2.3.4", 2, 2.0, NOW + 0.5)[0] is True
    assert limiter.try_consume("1.2.3.4", 2, 2.0, NOW + 0.5)[0] is False

    # Chờ 1 giờ: chỉ nạp tới capacity (2 token)
    later = NOW + 3600
    assert limiter.try_consume("1.2.3.4", 2, 2.0, later)[0] is True
    assert limiter.try_consume("1.2.3.4", 2, 2.0, later)[0] is True
    assert limiter.try_consume("1.2.3.4", 2, 2.0, later)[0] is False


@pytest.mark.parametrize("rate", [2.0, 3.0, 5.0, 7.0, 10.0, 11.0])
def test_one_token_after_exactly_one_refill_interval(limiter, rate):
    """
    Xô rỗng, chờ đúng 1/refill_rate giây -> được đúng 1 request nữa (kể cả khi phép nhân float lệch 1 chút)
    """
    for _ in range(5):
        assert limiter.try_consume("1.2.3.4", 5, rate, NOW)[0] is True
    assert limiter.try_consume("1.2.3.4", 5, rate, NOW)[0] is False

    later = NOW + 1 / rate
    assert limiter.try_consume("1.2.3.4", 5, rate, later)[0] is True
    assert limiter.try_consume("1.2.3.4", 5, rate, later)[0] is False


def test_retry_after_reflects_missing_tokens(limiter):
    """
    Tốc độ 0.1 token/giây, xô rỗng -> phải chờ 10 giây
    """
    assert limiter.try_consume("1.2.3.4", 1, 0.1, NOW) == (True, 0)
    allowed, retry_after = limiter.try_consume("1.2.3.4", 1, 0.1, NOW)
    assert allowed is False
    assert retry_after == 10


def test_rejection_lowers_reputation(limiter, reputation):
    limiter.try_consume("1.2.3.4", 1, 1.0, NOW)
    limiter.try_consume("1.2.3.4", 1, 1.0, NOW)

    record = reputation.get_reputation("1.2.3.4", NOW)
    assert record.score == 95
    assert record.violation_count == 1
    assert limiter.get_bucket("1.2.3.4").violation_count == 1


def test_buckets_are_isolated_per_identifier(limiter):
    assert limiter.try_consume("1.1.1.1", 1, 1.0, NOW)[0] is True
    assert limiter.try_consume("1.1.1.1", 1, 1.0, NOW)[0] is False
    assert limiter.try_consume("2.2.2.2", 1, 1.0, NOW)[0] is True


@pytest.mark.parametrize("score, expected", [
    (0, (20, 2.0)),
    (29, (20, 2.0)),
    (30, (50, 5.0)),
    (49, (50, 5.0)),
    (50, (75, 7.0)),
    (69, (75, 7.0)),
    (70, (100, 10.0)),
    (100, (100, 10.0)),
])
def test_bucket_tiers_follow_reputation(score, expected):
    assert bucket_for_score(score) == expected


def test_sweep_evicts_idle_buckets(limiter):
    limiter.try_consume("1.1.1.1", 10, 1.0, NOW)
    limiter.try_consume("2.2.2.2", 10, 1.0, NOW + 3 * 3600)

    removed = limiter.sweep(NOW + 3 * 3600)

    assert removed == 1
    assert limiter.get_bucket("1.1.1.1") is None
    assert limiter.get_bucket("2.2.2.2") is not None


def test_stress_concurrent_threads(limiter):
    """
    Burst đa luồng: 1000 lần tiêu token qua ThreadPoolExecutor (tối đa 50 luồng), cùng 1 thời điểm.
    Kỳ vọng allowed đúng bằng capacity (không mất/thừa token do race)
    """
    capacity = 200
    N = 1000

    def worker():
        allowed, _ = limiter.try_consume("9.9.9.9", capacity, 10.0, NOW)
        return allowed

    allowed_cnt = 0
    with ThreadPoolExecutor(max_workers=50) as ex:
        futures = [ex.submit(worker) for _ in range(N)]
        for fu in as_completed(futures):
            if fu.result():
                allowed_cnt += 1

    assert allowed_cnt == capacity


# =========================
# Giới hạn theo endpoint
# =========================

LOGIN_RULE = EndpointRule(name="login", path="/api/auth/login", max_requests=5, window_seconds=900)


def test_endpoint_limit_fixed_window(reputation):
    """
    5 lần/15 phút: lần thứ 6 bị chặn, retry_after = thời gian còn lại của cửa sổ
    """
    endpoint = EndpointRateLimiter([LOGIN_RULE], reputation)
    for i in range(5):
        assert endpoint.check("/api/auth/login", "1.2.3.4", NOW + i) is None

    exceeded = endpoint.check("/api/auth/login", "1.2.3.4", NOW + 100)
    assert exceeded is not None
    rule, retry_after = exceeded
    assert rule.name == "login"
    assert retry_after == 800
    assert reputation.get_reputation("1.2.3.4", NOW + 100).score == 95

    # Cửa sổ mới
    assert endpoint.check("/api/auth/login", "1.2.3.4", NOW + 900) is None


def test_endpoint_limit_ignores_other_paths(reputation):
    endpoint = EndpointRateLimiter([LOGIN_RULE], reputation)
    for _ in range(20):
        assert endpoint.check("/api/games/list", "1.2.3.4", NOW) is None
    assert len(endpoint) == 0


def test_endpoint_limit_matches_by_substring(reputation):
    endpoint = EndpointRateLimiter([LOGIN_RULE], reputation)
    for _ in range(5):
        endpoint.check("/v2/api/auth/login/otp", "1.2.3.4", NOW)
    assert endpoint.check("/v2/api/auth/login/otp", "1.2.3.4", NOW) is not None


def test_scraping_tracker_hourly_limit():
    tracker = ScrapingTracker(hourly_limit=3)
    assert [tracker.hit("1.2.3.4", NOW)[0] for _ in range(4)] == [True, True, True, False]
    # Sang giờ mới thì đếm lại
    assert tracker.hit("1.2.3.4", NOW + 3600) == (True, 1)
