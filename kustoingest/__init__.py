"""Queued, streaming and managed-streaming ingestion into Kusto tables over caller-supplied clients."""

__version__ = "0.1.0"

__all__ = [
    "errors",
    "utils",
    "gzip_stream",
    "ranked",
    "properties",
    "resources",
    "queued",
    "status",
    "result",
    "streaming",
    "managed",
]