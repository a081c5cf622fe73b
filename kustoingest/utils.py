"""Helpers for guessing compression and raw sizes of ingestion sources."""

from __future__ import annotations

import enum
import os

ESTIMATED_COMPRESSION_FACTOR = 11


class CompressionType(enum.Enum):
    """Compression applied to a source file."""

    UNKNOWN = "unknown"
    NONE = "none"
    GZIP = "gz"
    ZIP = "zip"

    def __str__(self):
        return self.value


def _extension(name, separators):
    base = name
    for sep in separators:
        base = base.rsplit(sep, 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot != -1 else ""


def compression_discovery(name):
    """Guess the compression of a file from its extension."""
    if name.lower().startswith("http"):
        ext = _extension(name.rstrip("/"), ("/",)).lower()
    else:
        separators = {"/", os.sep}
        if os.altsep:
            separators.add(os.altsep)
        ext = _extension(name, tuple(separators)).lower()

    if ext == ".gz":
        return CompressionType.GZIP
    if ext == ".zip":
        return CompressionType.ZIP
    return CompressionType.NONE


def estimate_raw_data_size(compression, file_size):
    """Estimate the uncompressed size of a source from its stored size."""
    if compression is CompressionType.ZIP:
        return file_size * ESTIMATED_COMPRESSION_FACTOR
    return file_size