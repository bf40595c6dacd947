"""
Dependency wiring for the FastAPI app.

Each provider returns a process-wide singleton. The supervisor owns the
backend process handle and the sync engine owns the markers; everything
else only reads them.
"""

from __future__ import annotations

import httpx

from sandgate.auth import AccessGate, HttpKeyFetcher, KeySetCache
from sandgate.config import get_settings
from sandgate.proxy import HttpProxy, WebSocketProxy
from sandgate.storage import InMemoryStorageClient, S3StorageClient, StorageClient
from sandgate.supervisor import (
    HttpReadinessProbe,
    LifecycleSupervisor,
    StartPolicy,
    SubprocessLauncher,
)
from sandgate.sync import SyncEngine

_http_client: httpx.AsyncClient | None = None
_storage_client: StorageClient | None = None
_sync_engine: SyncEngine | None = None
_supervisor: LifecycleSupervisor | None = None
_access_gate: AccessGate | None = None
_http_proxy: HttpProxy | None = None
_ws_proxy: WebSocketProxy | None = None


def get_http_client() -> httpx.AsyncClient:
    """
    Shared client for backend traffic, readiness probes and key fetches.
    """
    global _http_client
    if _http_client is not None and not _http_client.is_closed:
        return _http_client

    limits = httpx.Limits(max_keepalive_connections=20, max_connections=100)
    _http_client = httpx.AsyncClient(limits=limits, follow_redirects=False)
    return _http_client


async def reset_dependencies() -> None:
    """Close the shared client and drop every singleton built on it."""
    global _http_client, _storage_client, _sync_engine, _supervisor
    global _access_gate, _http_proxy, _ws_proxy
    if _http_client is not None:
        await _http_client.aclose()
    _http_client = None
    _storage_client = None
    _sync_engine = None
    _supervisor = None
    _access_gate = None
    _http_proxy = None
    _ws_proxy = None


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.s3_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.s3_bucket,
            region=settings.s3_region,
            endpoint=settings.s3_endpoint,
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
        )
    return _storage_client


def get_sync_engine() -> SyncEngine:
    global _sync_engine
    if _sync_engine:
        return _sync_engine

    settings = get_settings()
    _sync_engine = SyncEngine(
        get_storage_client(),
        settings.sync_entries,
        exclude=settings.sync_exclude,
        tick_timeout=settings.sync_tick_timeout_seconds,
        retry_attempts=settings.sync_retry_attempts,
        retry_base_delay=settings.sync_retry_base_delay_seconds,
    )
    return _sync_engine


def get_supervisor() -> LifecycleSupervisor:
    global _supervisor
    if _supervisor:
        return _supervisor

    settings = get_settings()
    policy = StartPolicy(
        max_attempts=settings.start_max_attempts,
        initial_delay=settings.start_initial_delay_seconds,
        max_delay=settings.start_max_delay_seconds,
        timeout=settings.start_timeout_seconds,
        stop_timeout=settings.stop_timeout_seconds,
        health_failure_threshold=settings.health_failure_threshold,
    )
    _supervisor = LifecycleSupervisor(
        launcher=SubprocessLauncher(
            settings.backend_command,
            env=settings.backend_env,
            cwd=settings.backend_workdir,
        ),
        probe=HttpReadinessProbe(
            get_http_client(),
            f"{settings.backend_url}{settings.backend_health_path}",
            timeout=settings.probe_timeout_seconds,
        ),
        restorer=get_sync_engine(),
        policy=policy,
    )
    return _supervisor


def get_access_gate() -> AccessGate:
    global _access_gate
    if _access_gate:
        return _access_gate

    settings = get_settings()
    keys = None
    if not settings.auth_dev_bypass:
        keys = KeySetCache(
            HttpKeyFetcher(
                get_http_client(),
                settings.jwks_url or "",
                timeout=settings.jwks_fetch_timeout_seconds,
            ),
            ttl=settings.jwks_ttl_seconds,
            grace=settings.jwks_grace_seconds,
            fetch_timeout=settings.jwks_fetch_timeout_seconds,
            min_refresh_interval=settings.jwks_min_refresh_interval_seconds,
        )
    _access_gate = AccessGate(
        keys,
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
        algorithms=settings.jwt_algorithms,
        leeway=settings.jwt_leeway_seconds,
        token_header=settings.token_header,
        token_cookie=settings.token_cookie,
        bypass=settings.auth_dev_bypass,
    )
    return _access_gate


def get_http_proxy() -> HttpProxy:
    global _http_proxy
    if _http_proxy:
        return _http_proxy

    settings = get_settings()
    _http_proxy = HttpProxy(
        get_http_client(),
        settings.backend_url,
        connect_timeout=settings.proxy_connect_timeout_seconds,
        read_timeout=settings.proxy_read_timeout_seconds,
    )
    return _http_proxy


def get_ws_proxy() -> WebSocketProxy:
    global _ws_proxy
    if _ws_proxy:
        return _ws_proxy

    settings = get_settings()
    _ws_proxy = WebSocketProxy(
        settings.backend_ws_url,
        open_timeout=settings.websocket_open_timeout_seconds,
        max_size=settings.websocket_max_size,
    )
    return _ws_proxy
