import math
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from log.system_log import system_logger
from security.config import DEFAULT_BUCKET, REPUTATION_TIERS, TTL, TTLConfig, EndpointRule

"""
Rate Limiter (trong bộ nhớ)
- Token bucket thích ứng: mỗi IP có 1 "xô" chứa tối đa capacity token, nạp lại refill_rate token/giây.
  Mỗi request tiêu 1 token; xô rỗng (< 1 token) thì từ chối.
  capacity/refill_rate phụ thuộc điểm uy tín của IP (uy tín càng thấp càng bị siết).
- Nạp token kiểu "lười": chỉ tính lại khi có request, dựa trên thời gian đã trôi qua.
- Endpoint nhạy cảm (login, rút tiền, đặt cược) có thêm bộ đếm cửa sổ cố định riêng.
- Mỗi lần bị từ chối đều báo cho ReputationScorer để trừ điểm uy tín.
"""

# Timestamp epoch (~1.7e9) chỉ chính xác tới ~2.4e-7 giây, nhân với refill_rate còn lệch cỡ 1e-6 token
TOKEN_EPSILON = 1e-4


def bucket_for_score(score: int) -> Tuple[int, float]:
    """
    Chọn (capacity, refill_rate) theo điểm uy tín
    Ví dụ: điểm 25 -> (20, 2.0), điểm 90 -> (100, 10.0)
    """
    for upper, capacity, refill_rate in REPUTATION_TIERS:
        if score < upper:
            return capacity, refill_rate
    return DEFAULT_BUCKET["capacity"], DEFAULT_BUCKET["refill_rate"]


@dataclass
class TokenBucket:
    tokens: float
    last_refill: float
    violation_count: int = 0

    def advance(self, now: float, capacity: int, refill_rate: float) -> None:
        """
        Nạp token theo thời gian đã trôi qua, không vượt quá capacity
        """
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(float(capacity), self.tokens + elapsed * refill_rate)
        self.last_refill = now


class TokenBucketLimiter:
    def __init__(self, reputation=None, ttl: TTLConfig = TTL):
        self._reputation = reputation
        self._ttl = ttl
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def try_consume(self, identifier: str, capacity: int, refill_rate: float, now: float) -> Tuple[bool, int]:
        """
        Tiêu 1 token của IP: trả (allowed, retry_after_giây)
        - Xô mới tạo luôn đầy
        - Bị từ chối: retry_after = thời gian để nạp đủ 1 token, tối thiểu 1 giây
        """
        with self._lock:
            bucket = self._buckets.get(identifier)
            if bucket is None:
                bucket = TokenBucket(tokens=float(capacity), last_refill=now)
                self._buckets[identifier] = bucket
            else:
                bucket.advance(now, capacity, refill_rate)

            # vd: 0.9999987 token sau đúng 1/refill_rate giây vẫn tính là đủ 1 token
            if bucket.tokens >= 1 - TOKEN_EPSILON:
                bucket.tokens = max(0.0, bucket.tokens - 1)
                return True, 0

            bucket.violation_count += 1
            missing = 1 - bucket.tokens
            retry_after = max(1, math.ceil(missing / refill_rate)) if refill_rate > 0 else 1

        if self._reputation is not None:
            self._reputation.report_violation(identifier, "rate_limit_exceeded", now)
        return False, retry_after

    def get_bucket(self, identifier: str) -> Optional[TokenBucket]:
        with self._lock:
            bucket = self._buckets.get(identifier)
            return TokenBucket(bucket.tokens, bucket.last_refill, bucket.violation_count) if bucket else None

    def sweep(self, now: float) -> int:
        """
        Xoá các xô không được nạp lại trong TTL.bucket_idle
        """
        with self._lock:
            stale = [ip for ip, b in self._buckets.items() if now - b.last_refill > self._ttl.bucket_idle]
            for ip in stale:
                del self._buckets[ip]
        return len(stale)

    def __len__(self) -> int:
        return len(self._buckets)


@dataclass
class _Window:
    count: int
    reset_at: float


class EndpointRateLimiter:
    """
    Giới hạn theo cửa sổ cố định cho từng endpoint nhạy cảm.
    Khoá đếm = (tên rule, IP); 1 path có thể khớp nhiều rule, mỗi rule đếm độc lập.
    """

    def __init__(self, rules: Iterable[EndpointRule], reputation=None):
        self._rules = tuple(rules)
        self._reputation = reputation
        self._windows: Dict[Tuple[str, str], _Window] = {}
        self._lock = threading.Lock()

    @property
    def rules(self) -> Tuple[EndpointRule, ...]:
        return self._rules

    def check(self, path: str, identifier: str, now: float) -> Optional[Tuple[EndpointRule, int]]:
        """
        Trả None nếu được phép, ngược lại (rule bị vượt, số giây đến khi cửa sổ reset)
        """
        exceeded: Optional[Tuple[EndpointRule, int]] = None
        with self._lock:
            for rule in self._rules:
                if rule.path not in path:
                    continue
                key = (rule.name, identifier)
                window = self._windows.get(key)
                if window is None or now >= window.reset_at:
                    window = _Window(count=0, reset_at=now + rule.window_seconds)
                    self._windows[key] = window
                window.count += 1
                if window.count > rule.max_requests and exceeded is None:
                    exceeded = (rule, max(1, math.ceil(window.reset_at - now)))

        if exceeded is not None:
            rule, retry_after = exceeded
            system_logger.warning(
                f"IP {identifier} vượt giới hạn endpoint {rule.name} ({rule.max_requests}/{rule.window_seconds}s) tại {path}"
            )
            if self._reputation is not None:
                self._reputation.report_violation(identifier, "rate_limit_exceeded", now)
        return exceeded

    def sweep(self, now: float) -> int:
        with self._lock:
            stale = [key for key, w in self._windows.items() if now >= w.reset_at]
            for key in stale:
                del self._windows[key]
        return len(stale)

    def __len__(self) -> int:
        return len(self._windows)


class ScrapingTracker:
    """
    Đếm tổng số request của mỗi IP theo từng giờ để phát hiện cào dữ liệu (scraping)
    """

    def __init__(self, hourly_limit: int, window_seconds: int = 60 * 60, idle_seconds: int = 2 * 60 * 60):
        self._limit = hourly_limit
        self._window = window_seconds
        self._idle = idle_seconds
        self._counters: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def hit(self, identifier: str, now: float) -> Tuple[bool, int]:
        """
        Trả (allowed, số request trong giờ hiện tại)
        """
        with self._lock:
            counter = self._counters.get(identifier)
            if counter is None or now >= counter.reset_at:
                counter = _Window(count=0, reset_at=now + self._window)
                self._counters[identifier] = counter
            counter.count += 1
            return counter.count <= self._limit, counter.count

    def sweep(self, now: float) -> int:
        with self._lock:
            # reset_at - window = thời điểm bắt đầu đếm
            stale = [ip for ip, c in self._counters.items() if now - (c.reset_at - self._window) > self._idle]
            for ip in stale:
                del self._counters[ip]
        return len(stale)

    def __len__(self) -> int:
        return len(self._counters)
