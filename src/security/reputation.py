import math
import threading
from dataclasses import dataclass, replace
from typing import Dict, Optional

from log.system_log import system_logger
from security.config import TTL, TTLConfig, VIOLATION_WEIGHTS

"""
Điểm uy tín theo IP (0..100, mặc định 100 = tin cậy hoàn toàn)
- Mỗi vi phạm trừ điểm theo VIOLATION_WEIGHTS, không xuống dưới 0.
- Điểm < 20 -> chặn IP trong TTL.block_seconds (30 phút).
- Không vi phạm thì cứ mỗi giờ hồi +1 điểm (tính lười khi đọc bản ghi), tối đa 100.
- Điểm hồi lên > 50 thì gỡ cờ chặn.
"""

MAX_SCORE = 100
BLOCK_THRESHOLD = 20
UNBLOCK_THRESHOLD = 50
LOW_REPUTATION = 50
DEFAULT_VIOLATION_WEIGHT = 5


@dataclass
class ReputationRecord:
    score: int = MAX_SCORE
    violation_count: int = 0
    last_violation_at: Optional[float] = None
    blocked: bool = False
    blocked_until: Optional[float] = None
    last_recovery_at: Optional[float] = None

    def advance(self, now: float, recovery_interval: int = TTL.recovery_interval) -> None:
        """
        Hồi điểm thụ động: +1 cho mỗi giờ trọn vẹn kể từ lần vi phạm/hồi điểm gần nhất
        """
        if self.score >= MAX_SCORE or self.last_violation_at is None:
            return
        since = max(self.last_violation_at, self.last_recovery_at or 0.0)
        hours = int((now - since) // recovery_interval)
        if hours <= 0:
            return
        self.score = min(MAX_SCORE, self.score + hours)
        # Giữ phần lẻ của giờ để lần sau tính tiếp
        self.last_recovery_at = since + hours * recovery_interval
        if self.blocked and self.score > UNBLOCK_THRESHOLD:
            self.blocked = False
            self.blocked_until = None


class ReputationScorer:
    """
    Lưu điểm uy tín của từng IP trong bộ nhớ, an toàn khi gọi từ nhiều thread.
    """

    def __init__(self, ttl: TTLConfig = TTL):
        self._ttl = ttl
        self._records: Dict[str, ReputationRecord] = {}
        self._lock = threading.Lock()

    def _advanced(self, identifier: str, now: float) -> Optional[ReputationRecord]:
        record = self._records.get(identifier)
        if record is not None:
            record.advance(now, self._ttl.recovery_interval)
        return record

    def report_violation(self, identifier: str, kind: str, now: float) -> ReputationRecord:
        """
        Ghi nhận 1 vi phạm và trả về bản sao bản ghi sau khi trừ điểm.
        kind không có trong bảng trọng số sẽ bị trừ DEFAULT_VIOLATION_WEIGHT.
        """
        weight = VIOLATION_WEIGHTS.get(kind, DEFAULT_VIOLATION_WEIGHT)
        with self._lock:
            record = self._advanced(identifier, now)
            if record is None:
                record = ReputationRecord()
                self._records[identifier] = record

            record.score = max(0, record.score - weight)
            record.violation_count += 1
            record.last_violation_at = now

            newly_blocked = False
            if record.score < BLOCK_THRESHOLD:
                newly_blocked = not record.blocked
                record.blocked = True
                record.blocked_until = now + self._ttl.block_seconds
            snapshot = replace(record)

        if newly_blocked:
            system_logger.warning(
                f"Chặn IP {identifier} trong {self._ttl.block_seconds // 60} phút: "
                f"điểm uy tín {snapshot.score} sau vi phạm {kind}"
            )
        return snapshot

    def get_reputation(self, identifier: str, now: float) -> ReputationRecord:
        """
        Trả về bản sao bản ghi (đã hồi điểm), IP chưa có bản ghi thì trả bản ghi mặc định (không lưu lại)
        """
        with self._lock:
            record = self._advanced(identifier, now)
            return replace(record) if record is not None else ReputationRecord()

    def score(self, identifier: str, now: float) -> int:
        return self.get_reputation(identifier, now).score

    def block_remaining(self, identifier: str, now: float) -> Optional[float]:
        """
        Số giây còn lại của lần chặn hiện tại, None nếu IP không bị chặn.
        Hết thời gian chặn thì gỡ cờ chặn luôn.
        """
        with self._lock:
            record = self._advanced(identifier, now)
            if record is None or not record.blocked:
                return None
            if record.blocked_until is not None and now < record.blocked_until:
                return record.blocked_until - now
            record.blocked = False
            record.blocked_until = None
            return None

    def sweep(self, now: float) -> int:
        """
        Xoá bản ghi không bị chặn và không có vi phạm mới trong TTL.reputation_idle.
        Lần chặn đã hết hạn được gỡ trước khi xét (IP không quay lại thì không ai gỡ giúp)
        """
        with self._lock:
            for rec in self._records.values():
                rec.advance(now, self._ttl.recovery_interval)
                if rec.blocked and rec.blocked_until is not None and rec.blocked_until <= now:
                    rec.blocked = False
                    rec.blocked_until = None
            stale = [
                ip for ip, rec in self._records.items()
                if not rec.blocked and now - (rec.last_violation_at or 0.0) > self._ttl.reputation_idle
            ]
            for ip in stale:
                del self._records[ip]
        return len(stale)

    def __len__(self) -> int:
        return len(self._records)


def blocked_minutes(remaining_seconds: float) -> int:
    return max(1, math.ceil(remaining_seconds / 60))
