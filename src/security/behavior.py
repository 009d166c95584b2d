import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from log.system_log import system_logger
from security.config import TTL, TTLConfig

"""
Phân tích hành vi theo IP, cộng dồn điểm bất thường (anomaly score):
- Request dồn dập (< 100ms so với request trước): +10
- Quét endpoint (> 20 path khác nhau nhưng < 50 request): +20
- Tỉ lệ request không phải GET > 70%: +15
- Response 401/403 (đăng nhập/quyền thất bại): +5
- Nghỉ > 30 giây giữa 2 request: -5 (không âm)
Điểm > 80 thì chặn.
"""

ANOMALY_THRESHOLD = 80
RAPID_REQUEST_SECONDS = 0.1
DECAY_GAP_SECONDS = 30
MAX_RECORDS = 5_000
READ_METHODS = ("GET", "HEAD", "OPTIONS")


@dataclass
class BehaviorRecord:
    request_count: int = 0
    failed_auth_count: int = 0
    last_request_at: float = 0.0
    paths: Counter = field(default_factory=Counter)
    methods: Counter = field(default_factory=Counter)
    anomaly_score: int = 0

    def advance(self, now: float) -> None:
        """
        Giảm điểm bất thường khi client nghỉ đủ lâu giữa 2 request
        """
        if self.request_count and now - self.last_request_at > DECAY_GAP_SECONDS:
            self.anomaly_score = max(0, self.anomaly_score - 5)

    @property
    def non_read_ratio(self) -> float:
        if not self.request_count:
            return 0.0
        writes = sum(n for method, n in self.methods.items() if method not in READ_METHODS)
        return writes / self.request_count


class BehaviorAnalyzer:
    def __init__(self, ttl: TTLConfig = TTL, exempt_identifiers: Iterable[str] = (),
                 max_records: int = MAX_RECORDS):
        """
        exempt_identifiers: danh sách IP chỉ tính điểm mà không bị chặn (vd: "unknown" khi chạy development)
        """
        self._ttl = ttl
        self._exempt = frozenset(exempt_identifiers)
        self._max_records = max_records
        self._records: Dict[str, BehaviorRecord] = {}
        self._lock = threading.Lock()

    def track(self, identifier: str, path: str, method: str, now: float) -> bool:
        """
        Ghi nhận 1 request, trả False nếu điểm bất thường vượt ngưỡng (cần chặn)
        """
        method = method.upper()
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                # Bản ghi mới coi như request trước đó vừa xảy ra
                record = BehaviorRecord(last_request_at=now)
                self._records[identifier] = record
            else:
                record.advance(now)

            gap = now - record.last_request_at
            record.request_count += 1
            record.paths[path] += 1
            record.methods[method] += 1

            if gap < RAPID_REQUEST_SECONDS:
                record.anomaly_score += 10
            if len(record.paths) > 20 and record.request_count < 50:
                record.anomaly_score += 20
            if record.non_read_ratio > 0.7:
                record.anomaly_score += 15

            record.last_request_at = now
            score = record.anomaly_score
            summary = (record.request_count, record.failed_auth_count, len(record.paths))

            if len(self._records) > self._max_records:
                self._purge_locked(now)

        if score > ANOMALY_THRESHOLD and identifier not in self._exempt:
            system_logger.warning(
                f"Điểm bất thường cao: ip={identifier} score={score} requests={summary[0]} "
                f"failed_auth={summary[1]} unique_paths={summary[2]}"
            )
            return False
        return True

    def record_response(self, identifier: str, status_code: int) -> None:
        """
        Response 401/403 được tính là 1 lần xác thực thất bại
        """
        if status_code not in (401, 403):
            return
        with self._lock:
            record = self._records.get(identifier)
            if record is not None:
                record.failed_auth_count += 1
                record.anomaly_score += 5

    def get(self, identifier: str) -> Optional[BehaviorRecord]:
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                return None
            return BehaviorRecord(
                request_count=record.request_count,
                failed_auth_count=record.failed_auth_count,
                last_request_at=record.last_request_at,
                paths=Counter(record.paths),
                methods=Counter(record.methods),
                anomaly_score=record.anomaly_score,
            )

    def _purge_locked(self, now: float) -> int:
        stale = [ip for ip, rec in self._records.items() if now - rec.last_request_at > self._ttl.behavior_idle]
        for ip in stale:
            del self._records[ip]
        return len(stale)

    def sweep(self, now: float) -> int:
        with self._lock:
            return self._purge_locked(now)

    def __len__(self) -> int:
        return len(self._records)
