import os
import secrets
from dataclasses import dataclass, field   # # Dùng dataclass cho nhóm cấu hình gọn gàng
from typing import Dict, List, Tuple
from dotenv import load_dotenv

from log.system_log import system_logger

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


def _env_list(name: str, default: str = "") -> Tuple[str, ...]:
    """
    Đọc biến môi trường dạng danh sách, phân tách bởi dấu phẩy.
    Ví dụ: BLOCKED_COUNTRIES="KP, IR" -> ("KP", "IR")
    """
    raw = os.getenv(name, default) or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


@dataclass(frozen=True)
class TTLConfig:
    """
    Gom TTL (Time To Live) của các trạng thái trong bộ nhớ vào 1 struct (đơn vị: giây):
    - bucket_idle: token bucket không được nạp lại trong thời gian này sẽ bị xoá
    - reputation_idle: bản ghi uy tín (không bị chặn) không có vi phạm mới trong thời gian này sẽ bị xoá
    - block_seconds: thời gian chặn IP khi điểm uy tín xuống dưới ngưỡng
    - recovery_interval: cứ mỗi khoảng này không vi phạm thì điểm uy tín hồi +1
    - fingerprint: thời gian sống của fingerprint trong cache
    - behavior_idle: bản ghi hành vi không có request mới trong thời gian này sẽ bị xoá
    - event_retention: sự kiện bảo mật cũ hơn thời gian này sẽ bị dọn
    - threat_decay: sau thời gian này phần điểm đe doạ toàn cục của 1 sự kiện sẽ được trừ lại
    """
    bucket_idle: int = 2 * 60 * 60
    reputation_idle: int = 2 * 60 * 60
    block_seconds: int = 30 * 60
    recovery_interval: int = 60 * 60
    fingerprint: int = 60 * 60
    behavior_idle: int = 15 * 60
    event_retention: int = 24 * 60 * 60
    threat_decay: int = 30 * 60


# Cấu hình TTL mặc định
TTL = TTLConfig()


@dataclass(frozen=True)
class EndpointRule:
    """
    Giới hạn riêng cho 1 endpoint nhạy cảm (đếm theo cửa sổ cố định):
    - name: tên nhóm (login/withdraw/bet_place)
    - path: đoạn đường dẫn cần khớp (so khớp kiểu "chứa chuỗi")
    - max_requests: số request tối đa trong 1 cửa sổ
    - window_seconds: độ dài cửa sổ
    """
    name: str
    path: str
    max_requests: int
    window_seconds: int


# Ngưỡng theo môi trường: production chặt hơn development
# Ví dụ production: /api/auth/login chỉ cho phép 5 lần/15 phút, development cho 15 lần để tiện test
ENDPOINT_LIMITS = {
    "production": {
        "login":     dict(path="/api/auth/login", max_requests=5,   window_seconds=15 * 60),
        "withdraw":  dict(path="/api/withdraw",   max_requests=3,   window_seconds=60 * 60),
        "bet_place": dict(path="/api/bets/place", max_requests=100, window_seconds=60),
    },
    "development": {
        "login":     dict(path="/api/auth/login", max_requests=15,  window_seconds=15 * 60),
        "withdraw":  dict(path="/api/withdraw",   max_requests=15,  window_seconds=15 * 60),
        "bet_place": dict(path="/api/bets/place", max_requests=200, window_seconds=60),
    },
}

# Biến môi trường cho phép ghi đè từng ngưỡng: (tên limit, tên window)
ENDPOINT_ENV_OVERRIDES = {
    "login":     ("LOGIN_RATE_LIMIT", "LOGIN_RATE_WINDOW_SECONDS"),
    "withdraw":  ("WITHDRAW_RATE_LIMIT", "WITHDRAW_RATE_WINDOW_SECONDS"),
    "bet_place": ("BET_RATE_LIMIT", "BET_RATE_WINDOW_SECONDS"),
}

# Bậc rate limit theo điểm uy tín: (điểm nhỏ hơn, capacity, refill token/giây)
# Điểm >= 70 dùng mức mặc định DEFAULT_BUCKET
REPUTATION_TIERS: Tuple[Tuple[int, int, float], ...] = (
    (30, 20, 2.0),
    (50, 50, 5.0),
    (70, 75, 7.0),
)
DEFAULT_BUCKET = dict(capacity=100, refill_rate=10.0)

# Điểm trừ uy tín theo loại vi phạm
VIOLATION_WEIGHTS: Dict[str, int] = {
    "rate_limit_exceeded": 5,
    "failed_auth": 10,
    "suspicious_activity": 15,
    "bot_detected": 25,
    "attack_attempt": 40,
}

# Trọng số điểm đe doạ theo mức độ nghiêm trọng của sự kiện
SEVERITY_WEIGHTS: Dict[str, int] = {
    "low": 1,
    "medium": 5,
    "high": 15,
    "critical": 30,
}

# Honeypot: các trường ẩn mà người dùng thật không bao giờ điền
HONEYPOT_FIELDS = ("website", "url", "company", "fax", "phone_number", "honeypot", "bot_field")

# Công cụ tấn công/quét lỗ hổng hay để lộ trong User-Agent
BLOCKED_USER_AGENTS = ("sqlmap", "nikto", "masscan", "nmap", "acunetix", "burpsuite", "havij", "metasploit")

# Các trường được phép chứa ký tự đặc biệt (mật khẩu, khoá...) nên bỏ qua khi dò SQL injection
SQLI_WHITELISTED_FIELDS = (
    "password", "currentpassword", "newpassword", "confirmpassword",
    "withdrawalpassword", "smtp_pass", "api_key", "secret", "token", "key", "value",
)

# Các route dùng truy vấn tham số hoá, bỏ qua dò SQL injection
SQLI_WHITELISTED_ROUTES = (
    "/api/admin/settings",
    "/api/admin/import",
    "/api/admin/export",
    "/api/auth/change-password",
    "/api/auth/change-withdrawal-password",
    "/api/auth/confirm-reset",
    "/api/auth/signup",
    "/api/auth/login",
)


@dataclass(frozen=True)
class DefenseConfig:
    """
    Toàn bộ cấu hình của pipeline phòng thủ.
    Khởi tạo qua load_config() (đọc biến môi trường), hoặc tự tạo trong test.
    """
    environment: str = "development"
    ttl: TTLConfig = TTL
    trusted_proxy_headers: Tuple[str, ...] = ("cf-connecting-ip",)
    endpoint_rules: Tuple[EndpointRule, ...] = ()
    adaptive_path_prefix: str = "/api/"
    request_secret: str = ""
    blocked_countries: Tuple[str, ...] = ()
    blocked_ips: Tuple[str, ...] = ()
    honeypot_fields: Tuple[str, ...] = HONEYPOT_FIELDS
    # Trường chỉ coi là honeypot khi path KHÔNG chứa các đoạn miễn trừ, ví dụ "address" ở trang rút tiền
    honeypot_conditional_fields: Dict[str, Tuple[str, ...]] = field(
        default_factory=lambda: {"address": ("/withdraw", "/payments/withdraw")}
    )
    scraping_hourly_limit: int = 50_000
    max_request_bytes: int = 10 * 1024 * 1024
    exfiltration_bytes: int = 500_000
    maintenance_interval: int = 10 * 60

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


def build_endpoint_rules(environment: str) -> Tuple[EndpointRule, ...]:
    """
    Tạo danh sách EndpointRule theo môi trường, có áp dụng ghi đè từ biến môi trường.
    """
    preset = ENDPOINT_LIMITS["production" if environment == "production" else "development"]
    rules: List[EndpointRule] = []
    for name, values in preset.items():
        limit_env, window_env = ENDPOINT_ENV_OVERRIDES[name]
        rules.append(EndpointRule(
            name=name,
            path=values["path"],
            max_requests=_env_int(limit_env, values["max_requests"]),
            window_seconds=_env_int(window_env, values["window_seconds"]),
        ))
    return tuple(rules)


def load_config() -> DefenseConfig:
    """
    Đọc cấu hình từ biến môi trường:
    - APP_ENV: production | development (mặc định development)
    - REQUEST_SECRET: khoá HMAC ký request; nếu thiếu thì dùng ENCRYPTION_KEY, nếu vẫn thiếu thì sinh ngẫu nhiên
    - TRUSTED_PROXY_HEADERS, BLOCKED_COUNTRIES, BLOCKED_IPS, HONEYPOT_EXEMPT_PATHS: danh sách phân tách bởi dấu phẩy
    - SCRAPING_HOURLY_LIMIT, MAX_REQUEST_BYTES, MAINTENANCE_INTERVAL_SECONDS: số nguyên
    """
    environment = (os.getenv("APP_ENV", "development") or "development").strip().lower()

    secret = os.getenv("REQUEST_SECRET") or os.getenv("ENCRYPTION_KEY")
    if not secret:
        # Không cấu hình khoá -> mỗi tiến trình tự sinh 1 khoá, client sẽ không ký đúng được
        system_logger.warning("REQUEST_SECRET/ENCRYPTION_KEY chưa được cấu hình, dùng khoá ngẫu nhiên cho tiến trình này")
        secret = secrets.token_hex(32)

    exempt_paths = _env_list("HONEYPOT_EXEMPT_PATHS", "/withdraw,/payments/withdraw")

    return DefenseConfig(
        environment=environment,
        trusted_proxy_headers=tuple(h.lower() for h in _env_list("TRUSTED_PROXY_HEADERS", "cf-connecting-ip")),
        endpoint_rules=build_endpoint_rules(environment),
        request_secret=secret,
        blocked_countries=tuple(c.upper() for c in _env_list("BLOCKED_COUNTRIES")),
        blocked_ips=_env_list("BLOCKED_IPS"),
        honeypot_conditional_fields={"address": exempt_paths},
        scraping_hourly_limit=_env_int("SCRAPING_HOURLY_LIMIT", 50_000),
        max_request_bytes=_env_int("MAX_REQUEST_BYTES", 10 * 1024 * 1024),
        maintenance_interval=_env_int("MAINTENANCE_INTERVAL_SECONDS", 10 * 60),
    )
