"""Local-variable capture adapters."""

from .locals import TracebackLocalsCapture, capture_scope, current, record

__all__ = ["TracebackLocalsCapture", "capture_scope", "current", "record"]
