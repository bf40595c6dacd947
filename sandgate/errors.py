"""
Error taxonomy shared by the gateway components.

Each concrete error carries a short ``kind`` string that is safe to show to
clients; the message may hold internal detail and is only logged.
"""

from __future__ import annotations


class GatewayError(Exception):
    kind = "gateway_error"


class ConfigurationError(GatewayError):
    kind = "configuration"


class AuthError(GatewayError):
    kind = "unauthorized"


class Unauthorized(AuthError):
    kind = "unauthorized"


class Expired(AuthError):
    kind = "expired"


class Malformed(AuthError):
    kind = "malformed"


class KeySetUnavailable(AuthError):
    kind = "keyset_unavailable"


class LifecycleError(GatewayError):
    kind = "lifecycle"


class StartTimeout(LifecycleError):
    kind = "start_timeout"


class StartFailed(LifecycleError):
    kind = "start_failed"


class ProcessCrashed(LifecycleError):
    kind = "process_crashed"


class ProxyError(GatewayError):
    kind = "proxy"


class UpstreamUnavailable(ProxyError):
    kind = "upstream_unavailable"


class UpstreamReset(ProxyError):
    kind = "upstream_reset"


class SyncError(GatewayError):
    kind = "sync"

    def __init__(self, message: str, *, entry: str | None = None):
        super().__init__(message)
        self.entry = entry


class TransferFailed(SyncError):
    kind = "transfer_failed"


class MarkerWriteFailed(SyncError):
    kind = "marker_write_failed"
