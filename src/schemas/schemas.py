from pydantic import BaseModel
from typing import Any, Dict, List, Optional

"""
Định nghĩa lược đồ từ người dùng đến API và từ API gửi đến người dùng
Có nghĩa là các thông tin sẽ hiển thị khi gọi đến API, giới hạn một số thông tin bí mật không được phép cho người dùng xem khi gọi API
"""

class UserAuth(BaseModel):
    """
    Trả về thông tin người dùng khi giải mã token
    """
    ID: str
    Name: Optional[str] = None
    Email: str
    Avatar: Optional[str] = None
    Privilege: Optional[str] = None


class AttackingIP(BaseModel):
    ip: str
    count: int


class SecurityStatisticsDisplay(BaseModel):
    """
    Thống kê sự kiện bảo mật trong 1 khoảng thời gian
    - **eventsByType / eventsByLevel**: số sự kiện theo loại / theo mức độ
    - **topAttackingIPs**: tối đa 10 IP có nhiều sự kiện nhất
    - **globalThreatLevel / globalThreatScore**: mức đe doạ toàn hệ thống hiện tại
    """
    totalEvents: int
    eventsByType: Dict[str, int]
    eventsByLevel: Dict[str, int]
    topAttackingIPs: List[AttackingIP]
    blockedEvents: int
    globalThreatLevel: str
    globalThreatScore: int


class SecurityEventDisplay(BaseModel):
    id: str
    type: str
    level: str
    timestamp: float
    ip: str
    path: str
    method: str
    userAgent: Optional[str] = None
    userId: Optional[str] = None
    details: Dict[str, Any]
    blocked: bool


class SecurityEventList(BaseModel):
    count: int
    items: List[SecurityEventDisplay]


class ThreatIndicatorDisplay(BaseModel):
    type: str
    severity: int
    description: str


class ThreatIndicatorList(BaseModel):
    ip: str
    threatScore: int
    indicators: List[ThreatIndicatorDisplay]


class ReputationDisplay(BaseModel):
    """
    Điểm uy tín hiện tại của 1 IP (100 = tin cậy hoàn toàn)
    """
    ip: str
    score: int
    violationCount: int
    lastViolationAt: Optional[float] = None
    blocked: bool
    blockedUntil: Optional[float] = None
