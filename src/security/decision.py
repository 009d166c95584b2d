import json
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl

from utils.get_ip_client import ClientIdentity

ALLOW = "allow"
REJECT = "reject"
CHALLENGE = "challenge"


@dataclass(frozen=True)
class Decision:
    """
    Kết quả của 1 bước kiểm tra trong pipeline.
    - outcome: allow | reject | challenge
    - status_code/code/error: dùng để trả về cho client khi bị chặn
    - retry_after: số giây (hoặc phút với IP_BLOCKED) client nên chờ
    """
    outcome: str = ALLOW
    status_code: int = 200
    code: Optional[str] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def allowed(self) -> bool:
        return self.outcome == ALLOW

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error, "code": self.code}
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        if self.outcome == CHALLENGE:
            body["challenge"] = True
        return body


_ALLOW = Decision()


def allow() -> Decision:
    return _ALLOW


def reject(status_code: int, code: str, error: str, retry_after: Optional[int] = None) -> Decision:
    return Decision(REJECT, status_code, code, error, retry_after)


def challenge(code: str, error: str) -> Decision:
    return Decision(CHALLENGE, 403, code, error)


@dataclass
class RequestContext:
    """
    Thông tin của 1 request đã được chuẩn hoá để các bước kiểm tra dùng chung:
    - headers: dict với key viết thường
    - body: body đã parse (JSON object/array hoặc form), None nếu không parse được
    - query: danh sách cặp (key, value), giữ đủ các tham số lặp lại (?q=a&q=b)
    - raw_body: bytes gốc, dùng để tính chữ ký HMAC
    - annotations: nơi các bước trước để lại kết quả cho bước sau (vd: bot verdict)
    """
    method: str
    path: str
    headers: Dict[str, str]
    identity: ClientIdentity
    body: Any = None
    raw_body: bytes = b""
    query: List[Tuple[str, str]] = field(default_factory=list)
    user_id: Optional[str] = None
    now: float = field(default_factory=time.time)
    annotations: Dict[str, Any] = field(default_factory=dict)

    @property
    def identifier(self) -> str:
        return self.identity.identifier

    @property
    def user_agent(self) -> str:
        return self.headers.get("user-agent", "")


def parse_body(raw_body: bytes, content_type: Optional[str]) -> Any:
    """
    Parse body theo content-type, lỗi thì trả None (không chặn request chỉ vì body sai định dạng)
    """
    if not raw_body:
        return None
    content_type = (content_type or "").lower()
    try:
        text = raw_body.decode("utf-8")
    except UnicodeDecodeError:
        return None

    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=True))

    if "json" in content_type or not content_type:
        try:
            data = json.loads(text)
        except ValueError:
            return None
        return data if isinstance(data, (dict, list)) else None
    return None


def query_pairs(query) -> List[Tuple[str, str]]:
    """
    QueryParams của Starlette (multi_items), dict hoặc list cặp -> list cặp (key, value)
    """
    if not query:
        return []
    if hasattr(query, "multi_items"):
        return [(str(k), str(v)) for k, v in query.multi_items()]
    if hasattr(query, "items"):
        return [(str(k), str(v)) for k, v in query.items()]
    return [(str(k), str(v)) for k, v in query]
