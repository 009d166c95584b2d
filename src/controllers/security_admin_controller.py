import io
import json
import math
import time
from typing import Optional
from fastapi import HTTPException, status
from openpyxl import Workbook
from schemas.schemas import UserAuth
from log.system_log import system_logger
from utils.utils import _norm_ip
from utils.constants import HIGH_PRIVILEGE_LIST


def _check_privilege(user_info: UserAuth) -> None:
    """
    Chỉ Admin/Boss (HIGH_PRIVILEGE_LIST) được xem dữ liệu bảo mật
    """
    if not (user_info["Privilege"] in HIGH_PRIVILEGE_LIST):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "Message": "Bạn không có quyền thực hiện thao tác này",
            }
        )


def _validate_ip(ip: str) -> str:
    is_ip, norm_ip = _norm_ip(ip_raw = ip)
    if not is_ip:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "Message": f"Địa chỉ IP không hợp lệ: {ip}",
            })
    return norm_ip


def _format_ts(ts: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(ts))


class Security_Admin_Controller:
    """
    Controller chỉ đọc cho quản trị bảo mật (Security Admin)
    Yêu cầu:
    - user_info["Privilege"] ∈ {Admin, Boss} (HIGH_PRIVILEGE_LIST)
    - pipeline: DefensePipeline đang chạy của ứng dụng (app.state.defense)
    """

    def get_statistics(user_info: UserAuth, pipeline, window_seconds: Optional[int] = None):
        """
        Thống kê sự kiện trong window_seconds giây gần nhất, bỏ trống = toàn bộ sự kiện đang lưu
        """
        _check_privilege(user_info)
        return pipeline.events.statistics(pipeline.clock(), window_seconds)

    def get_events(user_info: UserAuth, pipeline, window_seconds: Optional[int] = None, limit: int = 100):
        """
        Danh sách sự kiện gần nhất (mới nhất đứng trước), tối đa limit phần tử
        """
        _check_privilege(user_info)
        window = window_seconds if window_seconds else math.inf
        events = pipeline.events.recent_events(window, pipeline.clock())
        items = [e.to_dict() for e in reversed(events)][:max(1, int(limit))]
        return {"count": len(items), "items": items}

    def get_threat_indicators(user_info: UserAuth, pipeline, ip: str):
        norm_ip = _validate_ip(ip)
        _check_privilege(user_info)
        return {
            "ip": norm_ip,
            "threatScore": pipeline.events.identifier_score(norm_ip),
            "indicators": pipeline.events.threat_indicators(norm_ip, pipeline.clock()),
        }

    def get_reputation(user_info: UserAuth, pipeline, ip: str):
        norm_ip = _validate_ip(ip)
        _check_privilege(user_info)
        record = pipeline.reputation.get_reputation(norm_ip, pipeline.clock())
        return {
            "ip": norm_ip,
            "score": record.score,
            "violationCount": record.violation_count,
            "lastViolationAt": record.last_violation_at,
            "blocked": record.blocked,
            "blockedUntil": record.blocked_until,
        }

    def export_events_excel(user_info: UserAuth, pipeline, window_seconds: Optional[int] = None) -> io.BytesIO:
        """
        Xuất file Excel gồm 4 sheet:
        - Summary (thống kê tổng hợp)
        - Events (toàn bộ sự kiện trong khoảng thời gian)
        - TopAttackingIPs
        - CoordinatedAttacks
        """
        _check_privilege(user_info)
        now = pipeline.clock()
        stats = pipeline.events.statistics(now, window_seconds)
        events = pipeline.events.recent_events(window_seconds or math.inf, now)

        wb = Workbook()

        # --- Sheet 1: Summary ---
        ws1 = wb.active
        ws1.title = "Summary"
        ws1.append(["Metric", "Value"])
        ws1.append(["GeneratedAt(UTC)", _format_ts(now)])
        ws1.append(["TotalEvents", stats["totalEvents"]])
        ws1.append(["BlockedEvents", stats["blockedEvents"]])
        ws1.append(["GlobalThreatLevel", stats["globalThreatLevel"]])
        ws1.append(["GlobalThreatScore", stats["globalThreatScore"]])
        for event_type, count in sorted(stats["eventsByType"].items()):
            ws1.append([f"type:{event_type}", count])
        for level, count in sorted(stats["eventsByLevel"].items()):
            ws1.append([f"level:{level}", count])

        # --- Sheet 2: Events ---
        ws2 = wb.create_sheet("Events")
        ws2.append(["Timestamp(UTC)", "ID", "Type", "Level", "IP", "Method", "Path", "Blocked", "UserAgent", "Details"])
        for e in events:
            ws2.append([
                _format_ts(e.timestamp), e.id, e.type.value, e.level.value, e.ip, e.method, e.path,
                e.blocked, e.user_agent or "", json.dumps(e.details, ensure_ascii=False, default=str),
            ])

        # --- Sheet 3: TopAttackingIPs ---
        ws3 = wb.create_sheet("TopAttackingIPs")
        ws3.append(["IP", "Events"])
        for it in stats["topAttackingIPs"]:
            ws3.append([it["ip"], it["count"]])

        # --- Sheet 4: CoordinatedAttacks ---
        ws4 = wb.create_sheet("CoordinatedAttacks")
        ws4.append(["DetectedAt(UTC)", "EventType", "UniqueIPs", "Events"])
        for it in pipeline.events.coordinated_attacks():
            ws4.append([_format_ts(it["detectedAt"]), it["eventType"], it["uniqueIdentifiers"], it["eventCount"]])

        # Ghi workbook vào memory (BytesIO) để trả về StreamingResponse
        bio = io.BytesIO()
        wb.save(bio)
        bio.seek(0)
        system_logger.info(f"{user_info['Email']} xuất {len(events)} sự kiện bảo mật ra Excel")
        return bio
