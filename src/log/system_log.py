import logging
import shutil
import threading
import time
import os
from datetime import datetime
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Đường dẫn thư mục lưu trữ file log
SYSTEM_LOG_DIRECTORY = os.getenv("SYSTEM_LOG_DIRECTORY", "log/system_log")

Path(SYSTEM_LOG_DIRECTORY).mkdir(parents=True, exist_ok=True)


class CustomFilter(logging.Filter):
    """
    Bổ sung các trường của sự kiện bảo mật vào record, nếu không truyền qua `extra` thì mặc định là "-"
    Nhờ vậy formatter của security_logger luôn render được.
    """
    def filter(self, record):
        record.event_id = getattr(record, "event_id", "-")
        record.event_type = getattr(record, "event_type", "-")
        record.severity = getattr(record, "severity", "-")
        record.ip = getattr(record, "ip", "-")
        record.method = getattr(record, "method", "-")
        record.api_name = getattr(record, "api_name", "-")
        record.blocked = getattr(record, "blocked", False)
        record.details = getattr(record, "details", "-")
        return True


# Hàm xóa các thư mục log cũ hơn 30 ngày
def _remove_old_logs(logs_root=SYSTEM_LOG_DIRECTORY, max_days=30):
    """
    Xoá các thư mục log cũ hơn max_days ngày.
    """
    try:
        if not os.path.exists(logs_root):
            return

        now = datetime.now()
        # Duyệt các thư mục trong đường dẫn chứa các thư mục log theo ngày
        for entry in os.listdir(logs_root):
            entry_path = os.path.join(logs_root, entry)
            if not os.path.isdir(entry_path):
                continue
            try:
                folder_date = datetime.strptime(entry, "%d-%m-%y")  # Đọc tên thư mục theo định dạng ngày (DD-MM-YY)
            except ValueError:
                # Không phải thư mục ngày -> bỏ qua (vd: 'fallback')
                continue

            # Kiểm tra thời gian đã tạo thư mục
            age_days = (now - folder_date).days
            if age_days > max_days:
                shutil.rmtree(entry_path)  # Xoá thư mục log cũ
                system_logger.info(f"Đã xóa thư mục chứa log hệ thống: {entry_path}")
    except OSError as e:
        system_logger.error(f"Gặp lỗi trong quá trình xóa thư mục chứa log hệ thống: {e}")

# Formatter: Định dạng log với đầy đủ các thông tin
_formatter = logging.Formatter(
    '%(asctime)s %(levelname)s:\t %(filename)s - Line: %(lineno)d message: %(message)s',
    datefmt='%d/%m/%Y %H:%M:%S %p'
)

# Formatter cho sự kiện bảo mật: mỗi sự kiện 1 dòng, các trường cố định để dễ grep/đưa vào SIEM
_security_formatter = logging.Formatter(
    "%(asctime)s %(levelname)s - id: %(event_id)s - type: %(event_type)s - severity: %(severity)s - "
    "ip: %(ip)s - %(method)s %(api_name)s - blocked: %(blocked)s - details: %(details)s - %(message)s",
    datefmt="%d/%m/%Y %H:%M:%S",
)

# Tạo đường dẫn tệp log theo ngày
def _log_file_path(day_str=None, file_name="system_log.log"):
    day_str = day_str or datetime.now().strftime("%d-%m-%y")
    log_dir = os.path.join(SYSTEM_LOG_DIRECTORY, day_str)
    os.makedirs(log_dir, exist_ok=True)

    # Xóa các thư mục log nếu quá thời gian quy định
    _remove_old_logs()
    return os.path.join(log_dir, file_name)


def _make_file_handler(day_str, file_name, formatter, with_filter=False):
    handler = logging.FileHandler(_log_file_path(day_str, file_name), encoding="utf-8")
    if with_filter:
        handler.addFilter(CustomFilter())
    handler.setFormatter(formatter)
    return handler


# Logger ứng dụng (Sử dụng thread để tự tạo tệp cho ngày mới)
system_logger = logging.getLogger("system_logger")
system_logger.setLevel(logging.INFO)
system_logger.propagate = False

# Logger sự kiện bảo mật (mỗi dòng 1 sự kiện có cấu trúc)
security_logger = logging.getLogger("security_logger")
security_logger.setLevel(logging.INFO)
security_logger.propagate = False

# Console chỉ in từ WARNING trở lên để không spam khi chạy
_console_handler = logging.StreamHandler()
_console_handler.setLevel(logging.WARNING)
_console_handler.addFilter(CustomFilter())
_console_handler.setFormatter(_formatter)
system_logger.addHandler(_console_handler)
security_logger.addHandler(_console_handler)

# Đảm bảo tạo file log cho ngày hiện tại
_handler_lock = threading.Lock()
_current_day = datetime.now().strftime("%d-%m-%y")
_file_handler = _make_file_handler(_current_day, "system_log.log", _formatter)
_security_handler = _make_file_handler(_current_day, "security_log.log", _security_formatter, with_filter=True)
system_logger.addHandler(_file_handler)
security_logger.addHandler(_security_handler)


# Hàm kiểm tra và xoay log khi sang ngày mới
def _rotate_if_new_day():
    global _current_day, _file_handler, _security_handler
    day_now = datetime.now().strftime("%d-%m-%y")
    if day_now == _current_day:
        return

    with _handler_lock:
        # Cập nhật ngày mới và tạo file log mới
        _current_day = day_now
        new_handler = _make_file_handler(_current_day, "system_log.log", _formatter)
        new_security_handler = _make_file_handler(_current_day, "security_log.log", _security_formatter, with_filter=True)

        # Đóng handler cũ
        system_logger.removeHandler(_file_handler)
        _file_handler.close()
        security_logger.removeHandler(_security_handler)
        _security_handler.close()

        system_logger.addHandler(new_handler)
        security_logger.addHandler(new_security_handler)
        _file_handler = new_handler
        _security_handler = new_security_handler

# Thread nền kiểm tra ngày mới
def _rotation_thread():
    while True:
        try:
            _rotate_if_new_day()
        except OSError as e:
            system_logger.error(f"Không thể xoay file log sang ngày mới: {e}")
        time.sleep(3600)  # Kiểm tra mỗi 1 tiếng
