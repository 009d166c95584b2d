import hashlib
import hmac
import re
from typing import Any, Iterable, Optional

from log.system_log import system_logger
from security.config import SQLI_WHITELISTED_FIELDS, SQLI_WHITELISTED_ROUTES
from security.checks import block
from security.decision import Decision, RequestContext, allow, reject
from security.events import SecurityEventType, ThreatLevel

"""
Các bộ phát hiện tấn công chuyên biệt:
- Trước handler (check): scraping, kích thước request, path traversal, SQL injection, XSS,
  brute force, replay/tamper (chữ ký HMAC), honeypot
- Sau handler (observer): ghi nhận đăng nhập thất bại, phát hiện rút dữ liệu (response quá lớn)
"""

BRUTE_FORCE_PATHS = ("/login", "/auth")
BRUTE_FORCE_WINDOW = 15 * 60
BRUTE_FORCE_MAX_FAILURES = 5

EXFILTRATION_WINDOW = 60
EXFILTRATION_MAX_EVENTS = 10

REPLAY_MAX_AGE_MS = 5 * 60 * 1000
SIGNED_METHODS = ("POST", "PUT", "PATCH", "DELETE")

PATH_TRAVERSAL_PATTERNS = (
    re.compile(r"\.\."),
    re.compile(r"%2e%2e", re.I),
    re.compile(r"%252e%252e", re.I),
)

# Bỏ các mẫu bắt dấu nháy đơn/"--"/"#" đứng riêng vì chặn nhầm quá nhiều dữ liệu hợp lệ
SQL_INJECTION_PATTERNS = (
    re.compile(r"((%27)|')\s*union", re.I),
    re.compile(r"((%27)|')\s*(or|and)\s+[\w'\"]+\s*=", re.I),
    re.compile(r"exec(\s|\+)+(s|x)p\w+", re.I),
    re.compile(r"UNION.*SELECT", re.I),
    re.compile(r"SELECT.*FROM", re.I),
    re.compile(r"INSERT.*INTO", re.I),
    re.compile(r"DELETE.*FROM", re.I),
    re.compile(r"DROP.*TABLE", re.I),
    re.compile(r"UPDATE.*SET", re.I),
)

XSS_PATTERNS = (
    re.compile(r"<script[\s\S]*?>[\s\S]*?</script>", re.I),
    re.compile(r"<iframe[\s\S]*?>[\s\S]*?</iframe>", re.I),
    re.compile(r"javascript:", re.I),
    re.compile(r"\bon\w+\s*=", re.I),
    re.compile(r"<embed[\s\S]*?>", re.I),
    re.compile(r"<object[\s\S]*?>", re.I),
)

# Header hay được dùng để vượt qua reverse proxy, chỉ ghi log
SUSPICIOUS_HEADERS = ("x-scanner", "x-forwarded-host", "x-original-url", "x-rewrite-url")


def _matches(value: str, patterns) -> bool:
    return any(p.search(value) for p in patterns)


def _is_whitelisted_field(name: str) -> bool:
    name = (name or "").lower()
    return any(field in name for field in SQLI_WHITELISTED_FIELDS)


def _find_in(obj: Any, patterns, skip_field=None, parent: str = "") -> bool:
    """
    Duyệt đệ quy dict/list, trả True nếu có giá trị chuỗi khớp 1 trong các mẫu
    """
    if isinstance(obj, dict):
        items: Iterable = obj.items()
    elif isinstance(obj, list):
        items = ((parent, item) for item in obj)
    else:
        return isinstance(obj, str) and _matches(obj, patterns)

    for key, value in items:
        key = str(key)
        if skip_field and (skip_field(key) or skip_field(parent)):
            continue
        if isinstance(value, str):
            if _matches(value, patterns):
                return True
        elif isinstance(value, (dict, list)) and _find_in(value, patterns, skip_field, key):
            return True
    return False


# =========================
# Check trước handler
# =========================

def check_scraping(ctx: RequestContext, pipeline) -> Decision:
    allowed, count = pipeline.scraping.hit(ctx.identifier, ctx.now)
    if allowed:
        return allow()
    system_logger.warning(f"Nghi ngờ cào dữ liệu: ip={ctx.identifier} requests={count}/giờ path={ctx.path}")
    return block(
        ctx, pipeline,
        reject(429, "SCRAPING_DETECTED", "Too many requests"),
        SecurityEventType.SCRAPING, ThreatLevel.HIGH, "rate_limit_exceeded", {"requestCount": count},
    )


def check_request_size(ctx: RequestContext, pipeline) -> Decision:
    try:
        declared = int(ctx.headers.get("content-length") or 0)
    except ValueError:
        declared = 0
    size = max(declared, len(ctx.raw_body))
    if size <= pipeline.config.max_request_bytes:
        return allow()
    return block(
        ctx, pipeline,
        reject(413, "REQUEST_TOO_LARGE", "Request too large"),
        SecurityEventType.SUSPICIOUS_ACTIVITY, ThreatLevel.MEDIUM, details={"size": size},
    )


def check_suspicious_headers(ctx: RequestContext, pipeline) -> Decision:
    found = [h for h in SUSPICIOUS_HEADERS if ctx.headers.get(h)]
    if found:
        system_logger.warning(f"Header đáng ngờ: ip={ctx.identifier} path={ctx.path} headers={found}")
    return allow()


def check_path_traversal(ctx: RequestContext, pipeline) -> Decision:
    if not _matches(ctx.path, PATH_TRAVERSAL_PATTERNS):
        return allow()
    return block(
        ctx, pipeline,
        reject(403, "PATH_TRAVERSAL_DETECTED", "Invalid path"),
        SecurityEventType.PATH_TRAVERSAL, ThreatLevel.HIGH, "attack_attempt",
    )


def check_sql_injection(ctx: RequestContext, pipeline) -> Decision:
    """
    Dò SQL injection trong query và body, bỏ qua route/trường đã whitelist (mật khẩu, khoá...)
    """
    if any(ctx.path.startswith(route) for route in SQLI_WHITELISTED_ROUTES):
        return allow()

    location = None
    for key, value in ctx.query:
        if not _is_whitelisted_field(key) and _matches(value, SQL_INJECTION_PATTERNS):
            location = f"query:{key}"
            break
    if location is None and ctx.body and _find_in(ctx.body, SQL_INJECTION_PATTERNS, _is_whitelisted_field):
        location = "body"
    if location is None:
        return allow()

    system_logger.warning(f"Phát hiện SQL injection: ip={ctx.identifier} path={ctx.path} at={location}")
    return block(
        ctx, pipeline,
        reject(403, "SQL_INJECTION_DETECTED", "Invalid request"),
        SecurityEventType.SQL_INJECTION, ThreatLevel.CRITICAL, "attack_attempt", {"location": location},
    )


def check_xss(ctx: RequestContext, pipeline) -> Decision:
    location = next((f"query:{k}" for k, v in ctx.query if _matches(v, XSS_PATTERNS)), None)
    if location is None and ctx.body and _find_in(ctx.body, XSS_PATTERNS):
        location = "body"
    if location is None:
        return allow()

    system_logger.warning(f"Phát hiện XSS: ip={ctx.identifier} path={ctx.path} at={location}")
    return block(
        ctx, pipeline,
        reject(403, "XSS_DETECTED", "Invalid request"),
        SecurityEventType.XSS_ATTACK, ThreatLevel.HIGH, "attack_attempt", {"location": location},
    )


def is_auth_path(path: str) -> bool:
    return any(fragment in path for fragment in BRUTE_FORCE_PATHS)


def check_brute_force(ctx: RequestContext, pipeline) -> Decision:
    """
    >= 5 lần xác thực thất bại trong 15 phút trên endpoint đăng nhập -> chặn
    """
    if not is_auth_path(ctx.path):
        return allow()
    failures = pipeline.events.count_recent(
        SecurityEventType.AUTHENTICATION_FAILURE, ctx.identifier, BRUTE_FORCE_WINDOW, ctx.now
    )
    if failures < BRUTE_FORCE_MAX_FAILURES:
        return allow()
    return block(
        ctx, pipeline,
        reject(403, "BRUTE_FORCE_DETECTED", "Too many failed authentication attempts"),
        SecurityEventType.BRUTE_FORCE, ThreatLevel.CRITICAL, "attack_attempt",
        {"failureCount": failures, "timeWindow": "15min"},
    )


def sign_request(secret: str, raw_body: bytes, timestamp_ms: int) -> str:
    """
    Chữ ký client cần gửi qua X-Request-Signature: HMAC-SHA256(secret, body + timestamp)
    """
    payload = (raw_body or b"") + str(timestamp_ms).encode("ascii")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def check_replay(ctx: RequestContext, pipeline) -> Decision:
    """
    Kiểm tra request có chữ ký:
    - Không có header chữ ký/timestamp -> cho qua (client cũ)
    - Timestamp cũ hơn 5 phút -> REPLAY_ATTACK_DETECTED
    - Chữ ký sai -> TAMPER_DETECTED
    """
    if ctx.method not in SIGNED_METHODS:
        return allow()
    signature = ctx.headers.get("x-request-signature")
    raw_timestamp = ctx.headers.get("x-request-timestamp")
    if not signature or not raw_timestamp:
        return allow()

    try:
        timestamp_ms = int(raw_timestamp.strip())
    except ValueError:
        system_logger.info(f"Timestamp ký request không hợp lệ: ip={ctx.identifier} value={raw_timestamp!r}")
        return allow()

    age_ms = ctx.now * 1000 - timestamp_ms
    if age_ms > REPLAY_MAX_AGE_MS:
        system_logger.warning(f"Request quá hạn (replay?): ip={ctx.identifier} path={ctx.path} age={int(age_ms)}ms")
        return block(
            ctx, pipeline,
            reject(403, "REPLAY_ATTACK_DETECTED", "Request expired"),
            SecurityEventType.REPLAY_ATTACK, ThreatLevel.HIGH, "attack_attempt", {"ageMs": int(age_ms)},
        )

    expected = sign_request(pipeline.config.request_secret, ctx.raw_body, timestamp_ms)
    if not hmac.compare_digest(signature.strip().lower(), expected):
        system_logger.warning(f"Sai chữ ký request (tamper?): ip={ctx.identifier} path={ctx.path}")
        return block(
            ctx, pipeline,
            reject(403, "TAMPER_DETECTED", "Invalid request signature"),
            SecurityEventType.REQUEST_TAMPERING, ThreatLevel.HIGH, "attack_attempt",
        )
    return allow()


def check_honeypot(ctx: RequestContext, pipeline) -> Decision:
    """
    Trường ẩn mà người dùng thật không điền, có giá trị -> bot
    """
    if not isinstance(ctx.body, dict):
        return allow()

    config = pipeline.config
    fields = list(config.honeypot_fields)
    for name, exempt_paths in config.honeypot_conditional_fields.items():
        if not any(fragment in ctx.path for fragment in exempt_paths):
            fields.append(name)

    for name in fields:
        value = ctx.body.get(name)
        if value and str(value).strip() != "":
            system_logger.warning(f"Trường honeypot bị điền: ip={ctx.identifier} path={ctx.path} field={name}")
            return block(
                ctx, pipeline,
                reject(403, "BOT_DETECTED", "Invalid submission"),
                SecurityEventType.HONEYPOT_TRIGGERED, ThreatLevel.HIGH, "bot_detected", {"field": name},
            )
    return allow()


# =========================
# Observer sau handler
# =========================

def observe_auth_failure(ctx: RequestContext, pipeline, status_code: int, size: int) -> Optional[Decision]:
    """
    401/403 -> tăng điểm bất thường; trên endpoint đăng nhập thì ghi sự kiện xác thực thất bại
    """
    if status_code not in (401, 403):
        return None
    pipeline.behavior.record_response(ctx.identifier, status_code)
    if is_auth_path(ctx.path):
        pipeline.events.record(
            SecurityEventType.AUTHENTICATION_FAILURE, ThreatLevel.MEDIUM, ctx.identifier, ctx.path,
            ctx.method, ctx.now, details={"reason": "invalid_credentials", "status": status_code},
            user_agent=ctx.user_agent or None, user_id=ctx.user_id,
        )
        pipeline.reputation.report_violation(ctx.identifier, "failed_auth", ctx.now)
    return None


def observe_exfiltration(ctx: RequestContext, pipeline, status_code: int, size: int) -> Optional[Decision]:
    """
    Response > 500KB -> sự kiện data_exfiltration; >= 10 sự kiện trong 60 giây -> thay response bằng 403
    """
    if size > pipeline.config.exfiltration_bytes:
        pipeline.events.record(
            SecurityEventType.DATA_EXFILTRATION, ThreatLevel.HIGH, ctx.identifier, ctx.path, ctx.method,
            ctx.now, details={"responseSize": size, "suspicion": "large_response"},
            user_agent=ctx.user_agent or None, user_id=ctx.user_id,
        )

    recent = pipeline.events.count_recent(
        SecurityEventType.DATA_EXFILTRATION, ctx.identifier, EXFILTRATION_WINDOW, ctx.now
    )
    if recent < EXFILTRATION_MAX_EVENTS:
        return None
    return block(
        ctx, pipeline,
        reject(403, "DATA_EXFILTRATION_SUSPECTED", "Suspicious data access pattern detected"),
        SecurityEventType.DATA_EXFILTRATION, ThreatLevel.CRITICAL, "attack_attempt",
        {"requestCount": recent, "suspicion": "rapid_data_access"},
    )
