"""
Gateway for an ephemeral backend process.

This package authenticates inbound traffic, keeps exactly one backend
process running, proxies HTTP/WebSocket traffic to it, and keeps the
backend's local state backed up to S3-compatible object storage.
"""

__version__ = "0.1.0"
