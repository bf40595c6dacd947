"""
Admin routes plus the catch-all HTTP/WebSocket proxy routes.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, WebSocket

from sandgate.auth import AccessGate, Identity
from sandgate.dependencies import (
    get_access_gate,
    get_http_proxy,
    get_supervisor,
    get_sync_engine,
    get_ws_proxy,
)
from sandgate.errors import AuthError, LifecycleError, ProxyError, UpstreamUnavailable
from sandgate.proxy import HttpProxy, WebSocketProxy
from sandgate.responses import bad_gateway_response, starting_response, unauthorized_response
from sandgate.schemas import (
    ComputeUnitResponse,
    EntryStatusResponse,
    HealthResponse,
    StatusResponse,
    SyncReportResponse,
)
from sandgate.supervisor import LifecycleSupervisor
from sandgate.sync import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter()
proxy_router = APIRouter()

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


async def require_identity(
    request: Request, gate: AccessGate = Depends(get_access_gate)
) -> Identity:
    token = gate.extract_token(request.headers, request.cookies)
    return await gate.verify(token)


@router.get("/health", response_model=HealthResponse)
def health():
    return HealthResponse()


@router.get("/status", response_model=StatusResponse)
def status(
    identity: Identity = Depends(require_identity),
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
    engine: SyncEngine = Depends(get_sync_engine),
):
    return StatusResponse(
        backend=ComputeUnitResponse.from_unit(supervisor.snapshot()),
        sync=[
            EntryStatusResponse.from_status(name, entry_status)
            for name, entry_status in engine.status().items()
        ],
        auth_bypassed=identity.bypassed,
    )


@router.post("/sync", response_model=SyncReportResponse)
async def sync_now(
    identity: Identity = Depends(require_identity),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """
    Run a backup pass immediately. Also the hook for external timers.
    """
    logger.info("Backup requested by %s", identity.subject)
    report = await engine.backup()
    return SyncReportResponse.from_report(report)


@router.post("/restart", response_model=ComputeUnitResponse)
async def restart_backend(
    identity: Identity = Depends(require_identity),
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
):
    logger.info("Backend restart requested by %s", identity.subject)
    unit = await supervisor.restart()
    return ComputeUnitResponse.from_unit(unit)


@proxy_router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_http(
    request: Request,
    path: str,
    identity: Identity = Depends(require_identity),
    gate: AccessGate = Depends(get_access_gate),
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
    proxy: HttpProxy = Depends(get_http_proxy),
):
    await supervisor.ensure_running()
    try:
        return await proxy.forward(
            request,
            credential_headers=gate.credential_headers(request.headers),
            credential_cookie=gate.token_cookie,
        )
    except UpstreamUnavailable:
        # A dead backend surfaces as "starting" so the next request restarts it.
        await supervisor.confirm_alive()
        raise


@proxy_router.websocket("/{path:path}")
async def proxy_websocket(
    websocket: WebSocket,
    path: str,
    gate: AccessGate = Depends(get_access_gate),
    supervisor: LifecycleSupervisor = Depends(get_supervisor),
    proxy: WebSocketProxy = Depends(get_ws_proxy),
):
    # Refusals happen before accept, so they go out as plain HTTP responses
    # matching what the same failure returns on an HTTP route.
    token = gate.extract_token(websocket.headers, websocket.cookies)
    try:
        await gate.verify(token)
    except AuthError as exc:
        logger.info("WebSocket rejected (%s): %s", exc.kind, exc)
        await websocket.send_denial_response(unauthorized_response(exc))
        return

    try:
        await supervisor.ensure_running()
    except LifecycleError as exc:
        logger.warning("WebSocket refused, backend unavailable: %s", exc)
        await websocket.send_denial_response(starting_response())
        return

    try:
        upstream = await proxy.open_upstream(
            websocket,
            credential_headers=gate.credential_headers(websocket.headers),
            credential_cookie=gate.token_cookie,
        )
    except ProxyError as exc:
        logger.warning("WebSocket refused, backend handshake failed (%s)", exc.kind)
        await websocket.send_denial_response(bad_gateway_response())
        return

    try:
        await websocket.accept(subprotocol=getattr(upstream, "subprotocol", None))
    except Exception:
        await upstream.close()
        raise
    await proxy.pipe(websocket, upstream)
