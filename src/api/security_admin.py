from typing import Optional
from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from auth.oauth2 import required_token_user
from schemas.schemas import (
    UserAuth, SecurityStatisticsDisplay, SecurityEventList, ThreatIndicatorList, ReputationDisplay
)
from controllers.security_admin_controller import Security_Admin_Controller


router = APIRouter(
    prefix="/security/admin",
    tags=["Security Admin"]
)


def get_pipeline(request: Request):
    """
    Pipeline phòng thủ dùng chung của ứng dụng (gắn vào app.state.defense khi khởi tạo)
    """
    return request.app.state.defense


@router.get("/statistics", summary="Thống kê sự kiện bảo mật", response_model=SecurityStatisticsDisplay)
def get_statistics(window_seconds: Optional[int] = Query(None, ge=1, description="Số giây gần nhất; bỏ trống = toàn bộ"),
                   pipeline = Depends(get_pipeline),
                   user_info: UserAuth = Depends(required_token_user)):
    """
    Tổng số sự kiện, phân loại theo loại/mức độ, top 10 IP tấn công, mức đe doạ toàn hệ thống
    """
    return Security_Admin_Controller.get_statistics(user_info = user_info, pipeline = pipeline, window_seconds = window_seconds)

@router.get("/events", summary="Danh sách sự kiện bảo mật gần nhất", response_model=SecurityEventList)
def get_events(window_seconds: Optional[int] = Query(None, ge=1),
               limit: int = Query(100, ge=1, le=10000),
               pipeline = Depends(get_pipeline),
               user_info: UserAuth = Depends(required_token_user)):
    return Security_Admin_Controller.get_events(user_info = user_info, pipeline = pipeline,
                                                window_seconds = window_seconds, limit = limit)

@router.get("/threat_indicators", summary="Chỉ báo đe doạ của 1 IP", response_model=ThreatIndicatorList)
def get_threat_indicators(ip: str = Query(..., description="IPv4/IPv6"),
                          pipeline = Depends(get_pipeline),
                          user_info: UserAuth = Depends(required_token_user)):
    """
    Các chỉ báo (mức 1-10) dựa trên sự kiện của IP trong 1 giờ gần nhất
    """
    return Security_Admin_Controller.get_threat_indicators(user_info = user_info, pipeline = pipeline, ip = ip)

@router.get("/reputation", summary="Điểm uy tín của 1 IP", response_model=ReputationDisplay)
def get_reputation(ip: str = Query(..., description="IPv4/IPv6"),
                   pipeline = Depends(get_pipeline),
                   user_info: UserAuth = Depends(required_token_user)):
    return Security_Admin_Controller.get_reputation(user_info = user_info, pipeline = pipeline, ip = ip)

@router.get("/export/events.xlsx", summary="Xuất Excel sự kiện bảo mật")
def export_events(window_seconds: Optional[int] = Query(None, ge=1),
                  pipeline = Depends(get_pipeline),
                  user_info: UserAuth = Depends(required_token_user)):
    bio = Security_Admin_Controller.export_events_excel(user_info = user_info, pipeline = pipeline,
                                                        window_seconds = window_seconds)
    headers = {
        "Content-Disposition": 'attachment; filename="security_events.xlsx"',
        "Cache-Control": "no-store",
    }
    return StreamingResponse(
        bio,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )
