import math
import secrets
import threading
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from log.system_log import security_logger, system_logger
from security.config import SEVERITY_WEIGHTS, TTL, TTLConfig

"""
Bus sự kiện bảo mật:
- Lưu tối đa MAX_EVENTS sự kiện gần nhất (vòng đệm), sự kiện cũ nhất bị đẩy ra trước.
- Cộng điểm đe doạ theo IP và toàn hệ thống; phần điểm toàn hệ thống tự trừ lại sau 30 phút.
- Tính mức đe doạ toàn hệ thống (low/medium/high/critical) sau mỗi sự kiện.
- Phát hiện tấn công phối hợp: >= 5 IP khác nhau cùng 1 loại sự kiện trong 60 giây.
"""

MAX_EVENTS = 10_000
COORDINATED_WINDOW = 60
COORDINATED_MIN_IDENTIFIERS = 5
LEVEL_WINDOW = 5 * 60
MIN_KEPT_THREAT_SCORE = 5


class SecurityEventType(str, Enum):
    SQL_INJECTION = "sql_injection"
    XSS_ATTACK = "xss_attack"
    PATH_TRAVERSAL = "path_traversal"
    BOT_DETECTED = "bot_detected"
    BRUTE_FORCE = "brute_force"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    IP_BLOCKED = "ip_blocked"
    ANOMALY_DETECTED = "anomaly_detected"
    AUTHENTICATION_FAILURE = "authentication_failure"
    UNAUTHORIZED_ACCESS = "unauthorized_access"
    DATA_EXFILTRATION = "data_exfiltration"
    REPLAY_ATTACK = "replay_attack"
    REQUEST_TAMPERING = "request_tampering"
    HONEYPOT_TRIGGERED = "honeypot_triggered"
    SCRAPING = "scraping"


class ThreatLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(frozen=True)
class SecurityEvent:
    id: str
    type: SecurityEventType
    level: ThreatLevel
    timestamp: float
    ip: str
    path: str
    method: str
    user_agent: Optional[str] = None
    user_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    blocked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "level": self.level.value,
            "timestamp": self.timestamp,
            "ip": self.ip,
            "path": self.path,
            "method": self.method,
            "userAgent": self.user_agent,
            "userId": self.user_id,
            "details": dict(self.details),
            "blocked": self.blocked,
        }


@dataclass
class GlobalThreatState:
    level: ThreatLevel = ThreatLevel.LOW
    score: int = 0


class SecurityEventBus:
    def __init__(self, ttl: TTLConfig = TTL, max_events: int = MAX_EVENTS):
        self._ttl = ttl
        self._events: Deque[SecurityEvent] = deque(maxlen=max_events)
        self._identifier_scores: Dict[str, int] = {}
        self._global = GlobalThreatState()
        self._pending_decay: Deque[Tuple[float, int]] = deque()   # (thời điểm trừ, số điểm)
        self._coordinated: Deque[Dict[str, Any]] = deque(maxlen=100)
        # Chỉ mục theo cửa sổ trượt, cập nhật khi ghi để không phải quét cả vòng đệm
        self._level_window: Deque[Tuple[float, ThreatLevel]] = deque()
        self._level_counts: Counter = Counter()
        self._type_window: Dict[SecurityEventType, Deque[Tuple[float, str]]] = {}
        self._type_identifiers: Dict[SecurityEventType, Counter] = {}
        self._lock = threading.Lock()

    # =========================
    # Ghi sự kiện
    # =========================

    def record(self, event_type: SecurityEventType, level: ThreatLevel, identifier: str, path: str,
               method: str, now: float, details: Optional[Dict[str, Any]] = None, blocked: bool = False,
               user_agent: Optional[str] = None, user_id: Optional[str] = None) -> SecurityEvent:
        event = SecurityEvent(
            id=secrets.token_hex(16),
            type=SecurityEventType(event_type),
            level=ThreatLevel(level),
            timestamp=now,
            ip=identifier,
            path=path,
            method=method,
            user_agent=user_agent,
            user_id=user_id,
            details=dict(details or {}),
            blocked=blocked,
        )
        weight = SEVERITY_WEIGHTS.get(event.level.value, 1)

        with self._lock:
            self._events.append(event)
            self._identifier_scores[identifier] = self._identifier_scores.get(identifier, 0) + weight
            self._apply_decay_locked(now)
            self._global.score += weight
            self._pending_decay.append((now + self._ttl.threat_decay, weight))
            self._level_window.append((now, event.level))
            self._level_counts[event.level] += 1
            self._recompute_level_locked(now)
            global_state = GlobalThreatState(self._global.level, self._global.score)
            coordinated = self._detect_coordinated_locked(event)

        self._emit(event, global_state, coordinated)
        return event

    def _apply_decay_locked(self, now: float) -> None:
        while self._pending_decay and self._pending_decay[0][0] <= now:
            _, weight = self._pending_decay.popleft()
            self._global.score = max(0, self._global.score - weight)

    def _recent_locked(self, window: float, now: float) -> List[SecurityEvent]:
        if math.isinf(window):
            return list(self._events)
        cutoff = now - window
        return [e for e in self._events if e.timestamp > cutoff]

    def _prune_windows_locked(self, now: float) -> None:
        cutoff = now - LEVEL_WINDOW
        while self._level_window and self._level_window[0][0] <= cutoff:
            _, level = self._level_window.popleft()
            self._level_counts[level] -= 1

        cutoff = now - COORDINATED_WINDOW
        for event_type in list(self._type_window):
            window = self._type_window[event_type]
            identifiers = self._type_identifiers[event_type]
            while window and window[0][0] <= cutoff:
                _, ip = window.popleft()
                identifiers[ip] -= 1
                if identifiers[ip] <= 0:
                    del identifiers[ip]
            if not window:
                del self._type_window[event_type]
                del self._type_identifiers[event_type]

    def _recompute_level_locked(self, now: float) -> None:
        self._prune_windows_locked(now)
        critical = self._level_counts[ThreatLevel.CRITICAL]
        high = self._level_counts[ThreatLevel.HIGH]
        score = self._global.score

        if critical >= 5 or score > 200:
            self._global.level = ThreatLevel.CRITICAL
        elif critical >= 2 or high >= 10 or score > 100:
            self._global.level = ThreatLevel.HIGH
        elif high >= 5 or score > 50:
            self._global.level = ThreatLevel.MEDIUM
        else:
            self._global.level = ThreatLevel.LOW

    def _detect_coordinated_locked(self, event: SecurityEvent) -> Optional[Dict[str, Any]]:
        """
        Gọi sau _recompute_level_locked (cửa sổ 60 giây đã được cắt tới event.timestamp)
        """
        window = self._type_window.setdefault(event.type, deque())
        identifiers = self._type_identifiers.setdefault(event.type, Counter())
        window.append((event.timestamp, event.ip))
        identifiers[event.ip] += 1
        if len(identifiers) < COORDINATED_MIN_IDENTIFIERS:
            return None
        alert = {
            "eventType": event.type.value,
            "uniqueIdentifiers": len(identifiers),
            "eventCount": len(window),
            "detectedAt": event.timestamp,
        }
        self._coordinated.append(alert)
        return alert

    def _emit(self, event: SecurityEvent, global_state: GlobalThreatState,
              coordinated: Optional[Dict[str, Any]]) -> None:
        extra = {
            "event_id": event.id,
            "event_type": event.type.value,
            "severity": event.level.value,
            "ip": event.ip,
            "method": event.method,
            "api_name": event.path,
            "blocked": event.blocked,
            "details": event.details,
        }
        security_logger.info("Sự kiện bảo mật", extra=extra)

        if event.level == ThreatLevel.CRITICAL:
            security_logger.critical("CẢNH BÁO BẢO MẬT NGHIÊM TRỌNG", extra=extra)
        if coordinated is not None:
            system_logger.error(
                f"Phát hiện tấn công phối hợp: loại {coordinated['eventType']} từ "
                f"{coordinated['uniqueIdentifiers']} IP, {coordinated['eventCount']} sự kiện trong 1 phút"
            )
        if global_state.level == ThreatLevel.CRITICAL:
            system_logger.error(f"Mức đe doạ toàn hệ thống: CRITICAL (điểm {global_state.score})")

    # =========================
    # Đọc dữ liệu
    # =========================

    def recent_events(self, window: float, now: float) -> List[SecurityEvent]:
        """
        Các sự kiện trong window giây gần nhất (window=math.inf lấy toàn bộ), cũ trước mới sau
        """
        with self._lock:
            return self._recent_locked(window, now)

    def count_recent(self, event_type: SecurityEventType, identifier: str, window: float, now: float) -> int:
        with self._lock:
            return sum(1 for e in self._recent_locked(window, now) if e.type == event_type and e.ip == identifier)

    def global_threat(self, now: float) -> GlobalThreatState:
        with self._lock:
            self._apply_decay_locked(now)
            self._recompute_level_locked(now)
            return GlobalThreatState(self._global.level, self._global.score)

    def identifier_score(self, identifier: str) -> int:
        with self._lock:
            return self._identifier_scores.get(identifier, 0)

    def statistics(self, now: float, window: Optional[float] = None) -> Dict[str, Any]:
        """
        Thống kê sự kiện trong window giây gần nhất (None = toàn bộ sự kiện đang lưu)
        """
        state = self.global_threat(now)
        events = self.recent_events(math.inf if not window else window, now)

        by_type = Counter(e.type.value for e in events)
        by_level = Counter(e.level.value for e in events)
        by_ip = Counter(e.ip for e in events)

        return {
            "totalEvents": len(events),
            "eventsByType": dict(by_type),
            "eventsByLevel": dict(by_level),
            "topAttackingIPs": [{"ip": ip, "count": count} for ip, count in by_ip.most_common(10)],
            "blockedEvents": sum(1 for e in events if e.blocked),
            "globalThreatLevel": state.level.value,
            "globalThreatScore": state.score,
        }

    def threat_indicators(self, identifier: str, now: float) -> List[Dict[str, Any]]:
        """
        Các chỉ báo đe doạ (mức 1-10) của 1 IP dựa trên sự kiện trong 1 giờ gần nhất và điểm đe doạ tích luỹ
        """
        events = [e for e in self.recent_events(60 * 60, now) if e.ip == identifier]
        indicators: List[Dict[str, Any]] = []

        if len(events) > 50:
            indicators.append({
                "type": "high_request_volume",
                "severity": 7,
                "description": f"{len(events)} sự kiện bảo mật trong 1 giờ gần nhất",
            })

        critical = sum(1 for e in events if e.level == ThreatLevel.CRITICAL)
        if critical > 0:
            indicators.append({
                "type": "critical_events",
                "severity": 9,
                "description": f"{critical} sự kiện nghiêm trọng",
            })

        blocked = sum(1 for e in events if e.blocked)
        if blocked > 5:
            indicators.append({
                "type": "multiple_blocks",
                "severity": 8,
                "description": f"{blocked} lần bị chặn",
            })

        score = self.identifier_score(identifier)
        if score > 50:
            indicators.append({
                "type": "high_threat_score",
                "severity": min(10, score // 10),
                "description": f"Điểm đe doạ: {score}",
            })
        return indicators

    def coordinated_attacks(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._coordinated)

    # =========================
    # Dọn dẹp
    # =========================

    def sweep(self, now: float) -> int:
        """
        Xoá sự kiện cũ hơn TTL.event_retention và điểm đe doạ theo IP quá nhỏ
        """
        cutoff = now - self._ttl.event_retention
        with self._lock:
            removed = 0
            while self._events and self._events[0].timestamp < cutoff:
                self._events.popleft()
                removed += 1
            for ip in [ip for ip, score in self._identifier_scores.items() if score < MIN_KEPT_THREAT_SCORE]:
                del self._identifier_scores[ip]
            self._apply_decay_locked(now)
            self._prune_windows_locked(now)
        if removed:
            system_logger.info(f"Đã dọn {removed} sự kiện bảo mật cũ")
        return removed

    def __len__(self) -> int:
        return len(self._events)
