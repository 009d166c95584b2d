import pytest
from security.behavior import BehaviorAnalyzer

NOW = 1_700_000_000.0


@pytest.fixture
def analyzer():
    return BehaviorAnalyzer()


def test_rapid_requests_trip_on_ninth(analyzer):
    """
    Mỗi request dồn dập +10 (request đầu tiên cũng tính) -> request thứ 9 đạt 90 > 80 -> chặn
    """
    results = [analyzer.track("1.2.3.4", "/api/games", "GET", NOW) for _ in range(9)]
    assert results == [True] * 8 + [False]
    assert analyzer.get("1.2.3.4").anomaly_score == 90


def test_spaced_requests_do_not_accumulate(analyzer):
    for i in range(50):
        assert analyzer.track("1.2.3.4", "/api/games", "GET", NOW + i) is True
    # Chỉ request đầu tiên bị tính là dồn dập
    assert analyzer.get("1.2.3.4").anomaly_score == 10


def test_write_heavy_traffic(analyzer):
    """
    POST liên tục (cách nhau 1 giây): +15 mỗi request vì tỉ lệ không phải GET > 70%
    """
    results = [analyzer.track("1.2.3.4", "/api/bets/place", "POST", NOW + i) for i in range(5)]
    assert results == [True, True, True, True, False]


def test_head_and_options_count_as_reads(analyzer):
    for i, method in enumerate(["GET", "HEAD", "OPTIONS", "GET"]):
        analyzer.track("1.2.3.4", "/api/games", method, NOW + i)
    assert analyzer.get("1.2.3.4").anomaly_score == 10


def test_endpoint_scanning(analyzer):
    """
    Path khác nhau thứ 21 (tổng < 50 request) -> +20
    """
    for i in range(21):
        analyzer.track("1.2.3.4", f"/api/path-{i}", "GET", NOW + i)
    assert analyzer.get("1.2.3.4").anomaly_score == 30


def test_idle_gap_decays_score(analyzer):
    for _ in range(5):
        analyzer.track("1.2.3.4", "/api/games", "GET", NOW)
    assert analyzer.get("1.2.3.4").anomaly_score == 50

    analyzer.track("1.2.3.4", "/api/games", "GET", NOW + 31)
    assert analyzer.get("1.2.3.4").anomaly_score == 45


def test_failed_auth_responses_raise_score(analyzer):
    analyzer.track("1.2.3.4", "/api/auth/login", "GET", NOW)
    analyzer.record_response("1.2.3.4", 401)
    analyzer.record_response("1.2.3.4", 403)
    analyzer.record_response("1.2.3.4", 200)

    record = analyzer.get("1.2.3.4")
    assert record.failed_auth_count == 2
    assert record.anomaly_score == 20


def test_exempt_identifier_is_never_blocked():
    analyzer = BehaviorAnalyzer(exempt_identifiers=("unknown",))
    results = [analyzer.track("unknown", "/api/games", "GET", NOW) for _ in range(20)]
    assert all(results)
    assert analyzer.get("unknown").anomaly_score == 200


def test_sweep_evicts_records_idle_for_fifteen_minutes(analyzer):
    analyzer.track("1.1.1.1", "/", "GET", NOW)
    analyzer.track("2.2.2.2", "/", "GET", NOW + 600)

    assert analyzer.sweep(NOW + 15 * 60 + 1) == 1
    assert analyzer.get("1.1.1.1") is None
    assert analyzer.get("2.2.2.2") is not None


def test_inline_purge_over_capacity():
    analyzer = BehaviorAnalyzer(max_records=2)
    analyzer.track("1.1.1.1", "/", "GET", NOW)
    analyzer.track("2.2.2.2", "/", "GET", NOW)
    analyzer.track("3.3.3.3", "/", "GET", NOW + 16 * 60)
    assert len(analyzer) == 1
