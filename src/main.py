from fastapi import FastAPI# pip install "fastapi[standard]"
import uvicorn
import threading
import os
from contextlib import asynccontextmanager
from typing import Optional
from fastapi.middleware.cors import CORSMiddleware
from log.system_log import _rotation_thread, system_logger
from api import health_check, security_admin
from middlerware.security_guard import security_guard  # # Middleware phòng thủ
from security.pipeline import DefensePipeline
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


PORT_HOST = os.getenv("PORT_HOST", "8000")

# Ép kiểu để port là số nguyên
PORT = int(PORT_HOST)

# Khởi động thread nền tạo file log cho ngày mới của log hệ thống (ko gọi trong system_log vì mỗi khi import nó lại mở 1 thread, chỉ nên gọi 1 lần ở main)
log_thread = threading.Thread(target=_rotation_thread, name="DailySystemLogRotationThread", daemon=True)
log_thread.start()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Khi khởi động: bật luồng dọn dẹp trạng thái phòng thủ (bucket, uy tín, fingerprint, sự kiện cũ)
    pipeline: DefensePipeline = app.state.defense
    pipeline.start_maintenance()
    system_logger.info(f"Khởi động pipeline phòng thủ (môi trường: {pipeline.config.environment})")
    yield
    # Khi tắt server
    pipeline.stop_maintenance()
    system_logger.info("Dừng pipeline phòng thủ")


"""
Cho phép các trang web, app, api trên cùng 1 máy tính có thể truy cập đến api này
Mặc định các api trên cùng 1 máy không thể chia sẻ tài nguyên cho nhau
"""
origins = [
    "http://localhost:3000",
    "http://localhost:5000",
]


def create_app(pipeline: Optional[DefensePipeline] = None) -> FastAPI:
    """
    Tạo ứng dụng FastAPI với pipeline phòng thủ gắn tại app.state.defense
    Truyền pipeline riêng (vd: đồng hồ giả) khi test
    """
    app = FastAPI(
        docs_url="/myapi",  # Đặt đường dẫn Swagger UI thành "/myapi"
        redoc_url=None,  # Tắt Redoc UI
        lifespan= lifespan
    )
    app.state.defense = pipeline or DefensePipeline()

    # # Đăng ký middleware bảo vệ (đặt càng sớm càng tốt)
    app.middleware("http")(security_guard)

    # Thêm các endpoint ở đây
    app.include_router(health_check.router)
    app.include_router(security_admin.router)

    app.add_middleware(
        CORSMiddleware,
        allow_origins = origins,
        allow_credentials = True,
        allow_methods = ["*"],
        allow_headers = ["*"]
    )
    return app


# Khởi tại FastAPi
app = create_app()

if __name__ == "__main__":
    uvicorn.run("__main__:app", host="0.0.0.0", port=PORT)

    # Hoặc gõ trực tiếp lệnh `fastapi dev src/main.py` để vào chế độ developer
    # Hoặc gõ trực tiếp lệnh `fastapi run src/main.py` để vào chế độ lấy máy chạy làm server
