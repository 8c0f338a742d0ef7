"""
transport/__init__.py - Transport layer for network synchronization.

Provides pluggable transport adapters for sync operations. The
FastAPI hub lives in tablesync.transport.server.
"""

from tablesync.transport.base import SyncResult, TransportAdapter
from tablesync.transport.http_transport import HTTPTransport
from tablesync.transport.local import LocalTransport

__all__ = [
    "SyncResult",
    "TransportAdapter",
    "HTTPTransport",
    "LocalTransport",
]
