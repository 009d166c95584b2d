from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import os
from log.system_log import SYSTEM_LOG_DIRECTORY

# Khai báo router cho các endpoint kiểm tra sức khoẻ (không có tiền tố)
router = APIRouter(
    tags= ["Health"]
)


@router.get("/healthz", summary="Liveness probe")
async def healthz():
    """
    Kiểm tra sống/chết cơ bản của tiến trình.
    """
    return {"status": "ok"}

@router.get("/readyz", summary="Readiness probe")
def readyz(request: Request):
    """
    Kiểm tra sẵn sàng: pipeline phòng thủ đã khởi tạo + quyền ghi thư mục log.
    Trả 200 nếu ok, 503 nếu có bất kỳ lỗi nào.
    """
    checks = {}

    # Kiểm tra pipeline phòng thủ (luồng dọn dẹp chỉ chạy khi app khởi động qua lifespan)
    pipeline = getattr(request.app.state, "defense", None)
    if pipeline is None:
        checks["defense"] = "error: not_configured"
    else:
        checks["defense"] = "ok"
        checks["maintenance"] = "running" if pipeline.maintenance_alive else "stopped"

    # Kiểm tra quyền ghi thư mục log
    try:
        os.makedirs(SYSTEM_LOG_DIRECTORY, exist_ok=True)
        probe_file = os.path.join(SYSTEM_LOG_DIRECTORY, ".readyz.tmp")
        with open(probe_file, "w", encoding="utf-8") as f:
            f.write("ok")
        os.remove(probe_file)
        checks["fs"] = "ok"
    except OSError as e:
        checks["fs"] = f"error: {e.__class__.__name__}"

    ok = all(not str(val).startswith("error") for val in checks.values())
    return JSONResponse(
        status_code=200 if ok else 503,
        content={"status": "ok" if ok else "error", "checks": checks},
    )
