from ipaddress import ip_address
from typing import Optional, Tuple

def _norm_ip(ip_raw: Optional[str]) -> Tuple[bool, Optional[str]]:
    """
    Chuẩn hoá chuỗi IP về dạng hợp lệ
    - Hợp lệ: (True, ip đã chuẩn hoá), ví dụ "::FFFF:1.2.3.4" -> "::ffff:102:304"
    - Không hợp lệ: (False, chuỗi gốc) để caller tự quyết định
    """
    # Kiểm tra giá trị truyền vào tồn tại hay không và có phải là chuỗi string hay không
    if not ip_raw or not isinstance(ip_raw, str):
        return False, None

    try:
        return True, str(ip_address(ip_raw.strip()))  # Parse IPv4/IPv6; sai sẽ ném ValueError
    except ValueError:
        return False, ip_raw
