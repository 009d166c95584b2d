from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from utils.utils import _norm_ip

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class ClientIdentity:
    """
    Danh tính client dùng làm khoá cho mọi bộ đếm:
    - identifier: IP đã chuẩn hoá, hoặc "unknown" nếu không xác định được
    - country: mã quốc gia do CDN gắn (CF-IPCountry), có thể rỗng
    - ray: mã truy vết request của CDN (CF-Ray), có thể rỗng
    """
    identifier: str
    country: Optional[str] = None
    ray: Optional[str] = None


def resolve_client(headers: Mapping[str, str], peer: Optional[str],
                   trusted_headers: Iterable[str] = ("cf-connecting-ip",)) -> ClientIdentity:
    """
    Xác định IP thật của client theo thứ tự ưu tiên:
    1. Header của proxy tin cậy (mặc định CF-Connecting-IP)
    2. Phần tử đầu tiên của X-Forwarded-For (format: "client, proxy1, proxy2")
    3. Địa chỉ socket (request.client.host)
    4. "unknown"
    Giá trị không phải IP hợp lệ sẽ bị bỏ qua để chuyển sang nguồn tiếp theo.
    headers phải có key viết thường.
    """
    candidates = [headers.get(name.lower()) for name in trusted_headers]

    # Lưu ý một số nginx có thể set header là "X-real-ip", cần bổ sung vào TRUSTED_PROXY_HEADERS
    xff = headers.get("x-forwarded-for")
    if xff:
        candidates.append(xff.split(",")[0].strip())

    candidates.append(peer)

    identifier = UNKNOWN_CLIENT
    for raw in candidates:
        is_ip, value = _norm_ip(raw)
        if is_ip:
            identifier = value
            break

    country = (headers.get("cf-ipcountry") or "").strip().upper() or None
    ray = (headers.get("cf-ray") or "").strip() or None
    return ClientIdentity(identifier=identifier, country=country, ray=ray)
