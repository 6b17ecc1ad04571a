"""Server-Sent Events (SSE) infrastructure for real-time run updates."""

from .stream import SSEConnection, SSEManager, format_keepalive, format_sse_message

__all__ = ["SSEManager", "SSEConnection", "format_sse_message", "format_keepalive"]
