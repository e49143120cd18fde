from __future__ import annotations

import logging
import string
from uuid import uuid4

from fastapi import FastAPI, Request

REQUEST_ID_HEADER = "X-Request-ID"
REQUEST_ID_MAX_LENGTH = 128
_REQUEST_ID_CHARS = frozenset(string.ascii_letters + string.digits + "._-")
_LOG = logging.getLogger("app.http")

# responses under these prefixes carry passcode state and must not be cached
OTP_PATH_PREFIXES = ("/api/public/otp", "/api/admin/system")
NO_STORE_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}


def request_id_from_header(raw: str | None) -> str:
    value = str(raw or "").strip()
    if 0 < len(value) <= REQUEST_ID_MAX_LENGTH and set(value) <= _REQUEST_ID_CHARS:
        return value
    return uuid4().hex


def is_otp_path(path: str) -> bool:
    return path.startswith(OTP_PATH_PREFIXES)


def install_http_hardening(app: FastAPI) -> None:
    @app.middleware("http")
    async def _otp_response_headers(request: Request, call_next):
        request_id = request_id_from_header(request.headers.get(REQUEST_ID_HEADER))
        request.state.request_id = request_id

        response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-Content-Type-Options"] = "nosniff"
        if is_otp_path(request.url.path):
            response.headers.update(NO_STORE_HEADERS)
            _LOG.info("otp %s %s -> %s [%s]", request.method, request.url.path, response.status_code, request_id)
        return response
