import os
import tempfile

# Ghi log ra thư mục tạm, phải đặt trước khi import log.system_log
os.environ.setdefault("SYSTEM_LOG_DIRECTORY", tempfile.mkdtemp(prefix="defense_log_"))
os.environ.setdefault("REQUEST_SECRET", "test-request-secret")

import pytest

from security.config import DefenseConfig, build_endpoint_rules
from security.pipeline import DefensePipeline

# Header của 1 trình duyệt thật, không bị cộng điểm bot
BROWSER_HEADERS = {
    "user-agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/126.0 Safari/537.36",
    "accept": "text/html,application/json",
    "accept-language": "vi-VN,vi;q=0.9,en;q=0.8",
    "accept-encoding": "gzip, deflate, br",
}


class FakeClock:
    """
    Đồng hồ giả để điều khiển thời gian trong test (giây, epoch)
    """

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_config(**overrides) -> DefenseConfig:
    environment = overrides.pop("environment", "development")
    values = dict(
        environment=environment,
        endpoint_rules=build_endpoint_rules(environment),
        request_secret="test-request-secret",
    )
    values.update(overrides)
    return DefenseConfig(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pipeline(clock):
    return DefensePipeline(config=make_config(), clock=clock)


def browser_headers(ip: str = None, **extra) -> dict:
    headers = dict(BROWSER_HEADERS)
    if ip:
        headers["x-forwarded-for"] = ip
    headers.update(extra)
    return headers
