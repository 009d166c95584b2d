import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from log.system_log import system_logger
from security import checks as component_checks, detectors
from security.behavior import BehaviorAnalyzer
from security.bot_detection import BotFingerprinter
from security.config import DefenseConfig, load_config
from security.decision import Decision, RequestContext, allow, parse_body, query_pairs
from security.events import SecurityEventBus
from security.rate_limiter import EndpointRateLimiter, ScrapingTracker, TokenBucketLimiter
from security.reputation import ReputationScorer
from utils.get_ip_client import UNKNOWN_CLIENT, resolve_client

"""
Pipeline phòng thủ: gom mọi thành phần (uy tín, rate limit, bot, hành vi, bus sự kiện)
và chạy các bước kiểm tra theo thứ tự cố định cho từng request.
- evaluate(): chạy lần lượt các check, dừng ở check đầu tiên không cho qua
- observe(): chạy sau handler, có thể thay response bằng 1 Decision khác
Lỗi phát sinh trong 1 check được ghi log và coi như cho qua (không làm sập request).
"""

Check = Callable[[RequestContext, "DefensePipeline"], Decision]
Observer = Callable[[RequestContext, "DefensePipeline", int, int], Optional[Decision]]

DEFAULT_CHECKS: Sequence[Check] = (
    component_checks.check_country,
    component_checks.check_reputation,
    component_checks.check_blocklist,
    component_checks.check_user_agent,
    component_checks.check_bot,
    component_checks.check_behavior,
    component_checks.check_adaptive_rate,
    component_checks.check_endpoint_rate,
    detectors.check_scraping,
    detectors.check_request_size,
    detectors.check_suspicious_headers,
    detectors.check_path_traversal,
    detectors.check_sql_injection,
    detectors.check_xss,
    detectors.check_brute_force,
    detectors.check_replay,
    detectors.check_honeypot,
)

DEFAULT_OBSERVERS: Sequence[Observer] = (
    detectors.observe_auth_failure,
    detectors.observe_exfiltration,
)


class DefensePipeline:
    def __init__(self, config: Optional[DefenseConfig] = None, clock: Callable[[], float] = time.time,
                 checks: Optional[Sequence[Check]] = None, observers: Optional[Sequence[Observer]] = None):
        self.config = config or load_config()
        self.clock = clock
        self.checks = tuple(DEFAULT_CHECKS if checks is None else checks)
        self.observers = tuple(DEFAULT_OBSERVERS if observers is None else observers)

        ttl = self.config.ttl
        self.reputation = ReputationScorer(ttl)
        self.limiter = TokenBucketLimiter(self.reputation, ttl)
        self.endpoint_limiter = EndpointRateLimiter(self.config.endpoint_rules, self.reputation)
        self.scraping = ScrapingTracker(self.config.scraping_hourly_limit)
        self.bot = BotFingerprinter(ttl)
        # Development: IP "unknown" (chạy local, không có proxy) chỉ bị tính điểm, không bị chặn
        exempt = () if self.config.is_production else (UNKNOWN_CLIENT,)
        self.behavior = BehaviorAnalyzer(ttl, exempt_identifiers=exempt)
        self.events = SecurityEventBus(ttl)

        self._stop_event = threading.Event()
        self._maintenance: Optional[threading.Thread] = None

    # =========================
    # Xử lý request
    # =========================

    def inspect(self, method: str, path: str, headers: Mapping[str, str], peer: Optional[str] = None,
                raw_body: bytes = b"", content_type: Optional[str] = None,
                query: Any = None, user_id: Optional[str] = None) -> RequestContext:
        """
        Chuẩn hoá request thành RequestContext (header viết thường, xác định IP, parse body)
        """
        lowered = {str(k).lower(): str(v) for k, v in headers.items()}
        identity = resolve_client(lowered, peer, self.config.trusted_proxy_headers)
        return RequestContext(
            method=method.upper(),
            path=path,
            headers=lowered,
            identity=identity,
            body=parse_body(raw_body, content_type or lowered.get("content-type")),
            raw_body=raw_body or b"",
            query=query_pairs(query),
            user_id=user_id,
            now=self.clock(),
        )

    def evaluate(self, ctx: RequestContext) -> Decision:
        for check in self.checks:
            try:
                decision = check(ctx, self)
            except Exception:
                system_logger.exception(f"Lỗi khi chạy bước kiểm tra {check.__name__}, bỏ qua: {ctx.method} {ctx.path}")
                continue
            if not decision.allowed:
                return decision
        return allow()

    def observe(self, ctx: RequestContext, status_code: int, size: int) -> Optional[Decision]:
        replacement: Optional[Decision] = None
        for observer in self.observers:
            try:
                result = observer(ctx, self, status_code, size)
            except Exception:
                system_logger.exception(f"Lỗi khi chạy observer {observer.__name__}, bỏ qua: {ctx.method} {ctx.path}")
                continue
            if result is not None and not result.allowed and replacement is None:
                replacement = result
        return replacement

    # =========================
    # Dọn dẹp định kỳ
    # =========================

    def sweep(self, now: Optional[float] = None) -> Dict[str, int]:
        """
        Xoá trạng thái hết hạn của mọi thành phần, trả về số bản ghi đã xoá theo từng thành phần
        """
        now = self.clock() if now is None else now
        removed = {
            "buckets": self.limiter.sweep(now),
            "endpoint_windows": self.endpoint_limiter.sweep(now),
            "scraping": self.scraping.sweep(now),
            "reputation": self.reputation.sweep(now),
            "fingerprints": self.bot.sweep(now),
            "behavior": self.behavior.sweep(now),
            "events": self.events.sweep(now),
        }
        if any(removed.values()):
            system_logger.info(f"Dọn dẹp trạng thái phòng thủ: {removed}")
        return removed

    def _maintenance_loop(self) -> None:
        while not self._stop_event.wait(self.config.maintenance_interval):
            try:
                self.sweep()
            except Exception:
                system_logger.exception("Lỗi trong luồng dọn dẹp trạng thái phòng thủ")

    def start_maintenance(self) -> None:
        if self.maintenance_alive:
            return
        self._stop_event.clear()
        self._maintenance = threading.Thread(
            target=self._maintenance_loop, name="DefenseMaintenanceThread", daemon=True
        )
        self._maintenance.start()

    def stop_maintenance(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._maintenance is not None:
            self._maintenance.join(timeout)
            self._maintenance = None

    @property
    def maintenance_alive(self) -> bool:
        return self._maintenance is not None and self._maintenance.is_alive()
