"""
HTTP and WebSocket forwarding to the backend.

Bodies are streamed in both directions. Backend error detail on WebSocket
sessions is logged here and never relayed to the client.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import StreamingResponse
from starlette.websockets import WebSocket, WebSocketState
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from sandgate.errors import UpstreamReset, UpstreamUnavailable

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
WEBSOCKET_HANDSHAKE_HEADERS = frozenset(
    {
        "host",
        "sec-websocket-key",
        "sec-websocket-version",
        "sec-websocket-extensions",
        "sec-websocket-protocol",
        "user-agent",
        "content-length",
    }
)

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_NO_STATUS = 1005
CLOSE_BACKEND_ERROR = 1011
CLOSE_UPSTREAM_LOST = 1014

GENERIC_ERROR_REASON = "backend error"
UPSTREAM_LOST_REASON = "backend unavailable"


def strip_cookie(cookie_header: str, name: Optional[str]) -> str:
    if not name:
        return cookie_header
    kept = []
    for part in cookie_header.split(";"):
        key = part.split("=", 1)[0].strip()
        if key and key != name:
            kept.append(part.strip())
    return "; ".join(kept)


def forwarded_headers(
    items: Iterable[tuple[str, str]],
    *,
    drop: Iterable[str] = (),
    credential_cookie: Optional[str] = None,
) -> list[tuple[str, str]]:
    """Copy request headers minus hop-by-hop, credential, and dropped names."""
    dropped = HOP_BY_HOP_HEADERS | {name.lower() for name in drop}
    result = []
    for name, value in items:
        lower = name.lower()
        if lower in dropped:
            continue
        if lower == "cookie":
            value = strip_cookie(value, credential_cookie)
            if not value:
                continue
        result.append((name, value))
    return result


def _forwarding_info(
    headers: Iterable[tuple[str, str]],
    client_host: Optional[str],
    host: Optional[str],
    scheme: str,
) -> list[tuple[str, str]]:
    existing = [value for name, value in headers if name.lower() == "x-forwarded-for"]
    chain = ", ".join(existing + ([client_host] if client_host else []))
    info = [("x-forwarded-proto", scheme)]
    if chain:
        info.append(("x-forwarded-for", chain))
    if host:
        info.append(("x-forwarded-host", host))
    return info


class HttpProxy:
    """Forwards one HTTP exchange per call, streaming both bodies."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        *,
        connect_timeout: float = 10.0,
        read_timeout: Optional[float] = None,
    ):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.timeout = httpx.Timeout(read_timeout, connect=connect_timeout)

    def upstream_url(self, path: str, query: str) -> str:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{query}"
        return url

    async def forward(
        self,
        request: Request,
        *,
        credential_headers: Iterable[str] = (),
        credential_cookie: Optional[str] = None,
    ) -> StreamingResponse:
        raw = list(request.headers.items())
        headers = forwarded_headers(
            raw,
            drop={"host", "x-forwarded-for", "x-forwarded-proto", "x-forwarded-host", *credential_headers},
            credential_cookie=credential_cookie,
        )
        client_host = request.client.host if request.client else None
        headers.extend(
            _forwarding_info(raw, client_host, request.headers.get("host"), request.url.scheme)
        )
        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        upstream_request = self.client.build_request(
            request.method,
            self.upstream_url(request.url.path, request.url.query),
            headers=headers,
            content=request.stream() if has_body else None,
            timeout=self.timeout,
        )
        try:
            response = await self.client.send(upstream_request, stream=True)
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            logger.warning("Backend unreachable for %s %s: %s", request.method, request.url.path, exc)
            raise UpstreamUnavailable(str(exc)) from exc
        except httpx.HTTPError as exc:
            logger.warning("Backend reset %s %s: %s", request.method, request.url.path, exc)
            raise UpstreamReset(str(exc)) from exc

        streamed = StreamingResponse(
            _relay_body(response, request.url.path),
            status_code=response.status_code,
            background=BackgroundTask(response.aclose),
        )
        streamed.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1"))
            for name, value in response.headers.multi_items()
            if name.lower() not in HOP_BY_HOP_HEADERS
        ]
        return streamed


async def _relay_body(response: httpx.Response, path: str):
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as exc:
        logger.warning("Backend response body for %s interrupted: %s", path, exc)
        raise


def is_error_frame(message: Any) -> bool:
    """True for a backend text frame carrying a JSON object of type "error"."""
    if not isinstance(message, str) or '"error"' not in message:
        return False
    try:
        payload = json.loads(message)
    except ValueError:
        return False
    return isinstance(payload, dict) and payload.get("type") == "error"


def client_close_for(rcvd) -> tuple[int, str]:
    """Map the backend's close frame (or its absence) to what the client sees."""
    if rcvd is None:
        return CLOSE_UPSTREAM_LOST, UPSTREAM_LOST_REASON
    if rcvd.code in (CLOSE_NORMAL, CLOSE_GOING_AWAY):
        return rcvd.code, ""
    if rcvd.code == CLOSE_NO_STATUS:
        return CLOSE_NORMAL, ""
    return CLOSE_BACKEND_ERROR, GENERIC_ERROR_REASON


class WebSocketProxy:
    """Pairs a client WebSocket with a backend connection and pipes frames."""

    def __init__(
        self,
        base_url: str,
        *,
        connect: Callable[..., Any] = ws_connect,
        open_timeout: float = 10.0,
        max_size: Optional[int] = 16 * 1024 * 1024,
        close_timeout: float = 5.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._connect = connect
        self.open_timeout = open_timeout
        self.max_size = max_size
        self.close_timeout = close_timeout

    async def open_upstream(
        self,
        websocket: WebSocket,
        *,
        credential_headers: Iterable[str] = (),
        credential_cookie: Optional[str] = None,
    ):
        url = f"{self.base_url}{websocket.url.path}"
        if websocket.url.query:
            url = f"{url}?{websocket.url.query}"
        raw = list(websocket.headers.items())
        headers = forwarded_headers(
            raw,
            drop=WEBSOCKET_HANDSHAKE_HEADERS
            | {"x-forwarded-for", "x-forwarded-proto", "x-forwarded-host", *credential_headers},
            credential_cookie=credential_cookie,
        )
        client_host = websocket.client.host if websocket.client else None
        scheme = "https" if websocket.url.scheme == "wss" else "http"
        headers.extend(_forwarding_info(raw, client_host, websocket.headers.get("host"), scheme))
        subprotocols = websocket.scope.get("subprotocols") or None
        try:
            return await self._connect(
                url,
                additional_headers=headers,
                subprotocols=subprotocols,
                user_agent_header=websocket.headers.get("user-agent"),
                open_timeout=self.open_timeout,
                max_size=self.max_size,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake, InvalidURI) as exc:
            logger.warning("Backend WebSocket handshake failed for %s: %s", websocket.url.path, exc)
            raise UpstreamUnavailable(str(exc)) from exc

    async def pipe(self, websocket: WebSocket, upstream) -> None:
        session = uuid4().hex[:8]
        logger.debug("[%s] WebSocket session opened for %s", session, websocket.url.path)
        upstream_task = asyncio.create_task(self._pump_upstream(session, websocket, upstream))
        client_task = asyncio.create_task(self._pump_client(websocket, upstream))
        try:
            await asyncio.wait({upstream_task, client_task}, return_when=asyncio.FIRST_COMPLETED)
            if client_task.done() and not _client_left(client_task):
                # The backend refused a frame; let its side say why.
                await asyncio.wait({upstream_task}, timeout=self.close_timeout)
                if not upstream_task.done():
                    await _close_client(websocket, CLOSE_UPSTREAM_LOST, UPSTREAM_LOST_REASON)
            if upstream_task.done() and not upstream_task.cancelled() and upstream_task.exception() is None:
                code, reason = upstream_task.result()
                await _close_client(websocket, code, reason)
        finally:
            for task in (upstream_task, client_task):
                task.cancel()
            await asyncio.gather(upstream_task, client_task, return_exceptions=True)
            await upstream.close()
            logger.debug("[%s] WebSocket session closed", session)

    async def _pump_upstream(self, session: str, websocket: WebSocket, upstream) -> tuple[int, str]:
        try:
            while True:
                message = await upstream.recv()
                if is_error_frame(message):
                    logger.error("[%s] Backend sent error frame: %s", session, message[:2000])
                    return CLOSE_BACKEND_ERROR, GENERIC_ERROR_REASON
                if isinstance(message, bytes):
                    await websocket.send_bytes(message)
                else:
                    await websocket.send_text(message)
        except ConnectionClosed as exc:
            if exc.rcvd is None:
                logger.warning("[%s] Backend connection lost without close frame", session)
            elif exc.rcvd.code not in (CLOSE_NORMAL, CLOSE_GOING_AWAY, CLOSE_NO_STATUS):
                logger.error(
                    "[%s] Backend closed session with %s: %s",
                    session, exc.rcvd.code, exc.rcvd.reason,
                )
            return client_close_for(exc.rcvd)

    async def _pump_client(self, websocket: WebSocket, upstream) -> bool:
        """Returns True when the client left, False when the backend refused a frame."""
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return True
            payload = message.get("text")
            if payload is None:
                payload = message.get("bytes")
            if payload is None:
                continue
            try:
                await upstream.send(payload)
            except ConnectionClosed:
                return False


def _client_left(task: asyncio.Task) -> bool:
    return task.cancelled() or task.exception() is not None or task.result() is True


async def _close_client(websocket: WebSocket, code: int, reason: str) -> None:
    if (
        websocket.client_state is WebSocketState.CONNECTED
        and websocket.application_state is WebSocketState.CONNECTED
    ):
        await websocket.close(code=code, reason=reason or None)
