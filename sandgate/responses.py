"""
Client-facing error responses, shared by the HTTP exception handlers and the
WebSocket upgrade denial path.
"""

from __future__ import annotations

from starlette.responses import HTMLResponse, JSONResponse, Response

from sandgate.errors import AuthError

RETRY_AFTER_SECONDS = 5

_STARTING_PAGE = """<!doctype html>
<html><head><meta charset="utf-8"><meta http-equiv="refresh" content="{delay}">
<title>Starting</title></head>
<body><p>The service is starting. This page will refresh automatically.</p></body></html>
"""


def unauthorized_response(exc: AuthError) -> Response:
    return JSONResponse(
        status_code=401,
        content={"error": "unauthorized", "reason": exc.kind},
        headers={"WWW-Authenticate": "Bearer"},
    )


def starting_response(*, html: bool = False) -> Response:
    headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    if html:
        return HTMLResponse(
            _STARTING_PAGE.format(delay=RETRY_AFTER_SECONDS), status_code=503, headers=headers
        )
    return JSONResponse(
        status_code=503,
        content={"error": "backend_unavailable", "status": "starting"},
        headers=headers,
    )


def bad_gateway_response() -> Response:
    return JSONResponse(status_code=502, content={"error": "bad_gateway"})
