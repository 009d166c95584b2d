import hashlib
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

from security.config import TTL, TTLConfig

"""
Nhận diện bot bằng cách cộng điểm nghi vấn từ nhiều dấu hiệu:
- Thiếu các header trình duyệt thật luôn gửi (accept, accept-language, accept-encoding)
- User-Agent của công cụ tự động hoá (selenium, playwright, headless...)
- Header do webdriver/CDP chèn vào
- Cùng 1 fingerprint gửi lại trong < 50ms
Tổng điểm: < 100 cho qua, 100..149 yêu cầu xác minh (challenge), >= 150 chặn hẳn.
"""

SUSPECT_THRESHOLD = 100
BLOCK_THRESHOLD = 150
RAPID_REPEAT_SECONDS = 0.05
MAX_FINGERPRINTS = 10_000

# (tên header, điểm cộng khi thiếu)
MISSING_HEADER_WEIGHTS: Tuple[Tuple[str, int], ...] = (
    ("accept-language", 20),
    ("accept", 15),
    ("accept-encoding", 10),
)

# Dấu hiệu tự động hoá trong User-Agent (không phân biệt hoa thường), mỗi dấu hiệu khớp cộng điểm riêng
AUTOMATION_UA_PATTERNS: Tuple[Tuple[re.Pattern, str, int], ...] = (
    (re.compile("selenium", re.I), "selenium", 50),
    (re.compile("webdriver", re.I), "webdriver", 50),
    (re.compile("playwright", re.I), "playwright", 50),
    (re.compile("puppeteer", re.I), "puppeteer", 50),
    (re.compile("bot", re.I), "bot_in_ua", 30),
    (re.compile("crawler", re.I), "crawler", 30),
    (re.compile("spider", re.I), "spider", 30),
)

# Các thành phần tạo nên fingerprint của 1 client
FINGERPRINT_HEADERS = ("user-agent", "accept-language", "accept-encoding")
CLIENT_HINT_HEADERS = ("sec-ch-ua", "sec-ch-ua-mobile", "sec-ch-ua-platform")


@dataclass(frozen=True)
class BotVerdict:
    score: int
    indicators: Tuple[str, ...]
    fingerprint: str

    @property
    def suspected(self) -> bool:
        return SUSPECT_THRESHOLD <= self.score < BLOCK_THRESHOLD

    @property
    def blocked(self) -> bool:
        return self.score >= BLOCK_THRESHOLD


def compute_fingerprint(headers: Mapping[str, str], identifier: str) -> str:
    """
    SHA-256 của "UA|accept-language|accept-encoding|IP|sec-ch-ua|sec-ch-ua-mobile|sec-ch-ua-platform"
    """
    parts = [headers.get(name, "") for name in FINGERPRINT_HEADERS]
    parts.append(identifier or "")
    parts.extend(headers.get(name, "") for name in CLIENT_HINT_HEADERS)
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


class BotFingerprinter:
    def __init__(self, ttl: TTLConfig = TTL, max_entries: int = MAX_FINGERPRINTS):
        self._ttl = ttl
        self._max_entries = max_entries
        self._seen: Dict[str, float] = {}   # fingerprint -> lần thấy gần nhất
        self._lock = threading.Lock()

    def classify(self, headers: Mapping[str, str], identifier: str, now: float) -> BotVerdict:
        """
        Tính điểm nghi vấn của 1 request. Không ghi gì vào cache,
        gọi remember() sau đó để lưu lần xuất hiện của fingerprint.
        """
        score = 0
        indicators: List[str] = []

        for name, weight in MISSING_HEADER_WEIGHTS:
            if not headers.get(name):
                score += weight
                indicators.append(f"missing_{name.replace('-', '_')}")

        user_agent = headers.get("user-agent", "")
        for pattern, name, weight in AUTOMATION_UA_PATTERNS:
            if pattern.search(user_agent):
                score += weight
                indicators.append(name)

        if "HeadlessChrome" in user_agent or "PhantomJS" in user_agent:
            score += 50
            indicators.append("headless_browser")

        if headers.get("webdriver") == "true":
            score += 60
            indicators.append("webdriver_header")

        # Header của Chrome DevTools Protocol
        if headers.get("chrome-target") or headers.get("devtools-request-id"):
            score += 40
            indicators.append("cdp_detected")

        if headers.get("x-requested-with") == "XMLHttpRequest" and not headers.get("referer"):
            score += 25
            indicators.append("suspicious_ajax")

        fingerprint = compute_fingerprint(headers, identifier)
        with self._lock:
            last_seen = self._seen.get(fingerprint)
        if last_seen is not None and 0 <= now - last_seen < RAPID_REPEAT_SECONDS:
            score += 30
            indicators.append("rapid_sequential_requests")

        return BotVerdict(score=score, indicators=tuple(indicators), fingerprint=fingerprint)

    def remember(self, fingerprint: str, now: float) -> None:
        with self._lock:
            self._seen[fingerprint] = now
            if len(self._seen) > self._max_entries:
                self._purge_locked(now)

    def _purge_locked(self, now: float) -> int:
        stale = [fp for fp, seen in self._seen.items() if now - seen > self._ttl.fingerprint]
        for fp in stale:
            del self._seen[fp]
        return len(stale)

    def sweep(self, now: float) -> int:
        with self._lock:
            return self._purge_locked(now)

    def __len__(self) -> int:
        return len(self._seen)
