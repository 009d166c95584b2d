from fastapi.security import OAuth2PasswordBearer
from typing import Optional
from fastapi import Depends, HTTPException, status
from datetime import datetime, timedelta, timezone
from jose import jwt # pip install python-jose
from jose.exceptions import JWTError
from dotenv import load_dotenv
import os

load_dotenv()  # Tự động tìm và nạp file .env ở thư mục hiện tại


# Khóa bí mật, nên tạo nó ngẫu nhiên bằng cách sau
# mở terminal và chạy lệnh: openssl rand -hex 32
# Chỉ những bên có SECRET_KEY mới có thể xác thực và giải mã token.
# Token được cấp bởi dịch vụ đăng nhập dùng chung SECRET_KEY với dịch vụ này
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = 15

# Chỉ định nơi lấy token bằng hàm login
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    """
    Tạo token với tiêu chuẩn JWT (RFC 7519)
    - **data: dict**: thông tin người dùng (ID, Name, Email, Avatar, Privilege)
    - **expires_delta**: Thời gian hết hạn của token, mặc định là 15 phút
    """
    # Tạo một bản sao data để thao tác, ko ảnh hưởng đến data gốc
    to_encode = data.copy()

    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})

    # Tạo token với khóa bí mật và phương thức tạo
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


# Khi sử dụng hàm này lấy token thì bất cứ api nào yêu cầu xác thực, nếu người dùng ko truyền token vào thì trả về lỗi: 401 {'detail': 'Not authenticated'}
def required_token_user(token: str = Depends(oauth2_scheme)):
    """
    Lấy thông tin người dùng hiện tại dựa vào `token`
    - `payload = jwt.decode(token, SECRET_KEY, algorithms= [ALGORITHM])` sẽ giải mã token dựa vào khóa bí mật và thuật toán đã sử dụng
    """
    credentials_exception = HTTPException(
        status_code= status.HTTP_401_UNAUTHORIZED,
        detail= {
            "message": "Không thể xác thực token người dùng"
        },
        headers= {"WWW-Authenticate": "Bearer"}
    )
    if not SECRET_KEY:
        # Chưa cấu hình khoá thì không token nào hợp lệ
        raise credentials_exception

    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms= [ALGORITHM])
    except JWTError:
        raise credentials_exception

    user_id = payload.get("ID")
    email = payload.get("Email")

    # Kiểm tra các thông tin có tồn tại trong payload không
    if not user_id or not email:
        raise credentials_exception

    return {
        "ID": user_id,
        "Name": payload.get("Name"),
        "Email": email,
        "Avatar": payload.get("Avatar"),
        "Privilege": payload.get("Privilege"),
    }
