from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.responses import Response

from security import detectors
from security.decision import Decision


def _reject_response(decision: Decision) -> JSONResponse:
    """
    Chuyển Decision bị chặn thành JSON {error, code, retryAfter?, challenge?}
    429 kèm header Retry-After (giây) để client biết khi nào gửi lại
    """
    headers = {}
    if decision.status_code == 429 and decision.retry_after is not None:
        headers["Retry-After"] = str(decision.retry_after)
    return JSONResponse(decision.to_body(), status_code=decision.status_code, headers=headers)


def _declared_length(request: Request) -> int:
    try:
        return int(request.headers.get("content-length") or 0)
    except ValueError:
        return 0


async def _read_body(request: Request, limit: int) -> bytes:
    """
    Đọc body theo từng chunk, dừng ngay khi vượt limit (body chunked không có content-length)
    """
    chunks = []
    size = 0
    async for chunk in request.stream():
        chunks.append(chunk)
        size += len(chunk)
        if size > limit:
            break
    return b"".join(chunks)


async def security_guard(request: Request, call_next):
    """
    Middleware:
    - Lấy pipeline phòng thủ từ app.state.defense, chuẩn hoá request (IP, header, body)
    - Chạy các bước kiểm tra trước handler; bị chặn thì trả lỗi ngay (không vào handler)
    - Sau handler: đọc toàn bộ body response để biết kích thước, chạy các observer
      (đăng nhập thất bại, rút dữ liệu); observer có thể thay response bằng 403
    """
    pipeline = getattr(request.app.state, "defense", None)
    if pipeline is None:
        return await call_next(request)

    # 1) Quá kích thước (theo content-length hoặc khi đang đọc) thì chặn luôn, không đọc hết body
    limit = pipeline.config.max_request_bytes
    oversized = _declared_length(request) > limit
    raw_body = b"" if oversized else await _read_body(request, limit)
    if len(raw_body) > limit:
        oversized = True
    else:
        # Cache lại để handler vẫn gọi được request.body()/request.json()
        request._body = raw_body

    ctx = pipeline.inspect(
        method=request.method,
        path=request.url.path,
        headers=request.headers,
        peer=request.client.host if request.client else None,
        raw_body=raw_body,
        query=request.query_params,
    )
    request.state.client_ip = ctx.identifier

    # 2) Kiểm tra trước handler
    decision = detectors.check_request_size(ctx, pipeline) if oversized else pipeline.evaluate(ctx)
    if not decision.allowed:
        return _reject_response(decision)

    # 3) Cho request đi qua
    response = await call_next(request)

    # 4) Đọc body response để tính kích thước (response dạng stream nên phải gom lại)
    body = b""
    async for chunk in response.body_iterator:
        body += chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")

    replacement = pipeline.observe(ctx, response.status_code, len(body))
    if replacement is not None:
        return _reject_response(replacement)

    # Truyền Headers (không phải dict) để giữ các header lặp lại, vd: nhiều Set-Cookie
    return Response(
        content=body,
        status_code=response.status_code,
        headers=response.headers,
        media_type=response.media_type,
    )
