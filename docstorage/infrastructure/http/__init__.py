"""
Outbound HTTP with SSRF protection.
"""

from .egress import (
    EgressBlockedError,
    EgressFilteringTransport,
    EgressPolicy,
    RemoteObject,
    fetch_remote_object,
)

__all__ = [
    "EgressBlockedError",
    "EgressFilteringTransport",
    "EgressPolicy",
    "RemoteObject",
    "fetch_remote_object",
]
