"""A readable stream that gzip-compresses another stream on the fly."""

from __future__ import annotations

import io
import zlib

_CHUNK_SIZE = 64 * 1024
_GZIP_WBITS = 16 + zlib.MAX_WBITS


class GzipStreamer(io.RawIOBase):
    """Reads uncompressed data from a source and yields it gzip-compressed."""

    def __init__(self, source):
        super().__init__()
        if isinstance(source, (bytes, bytearray, memoryview)):
            source = io.BytesIO(bytes(source))
        self._source = source
        self._compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, _GZIP_WBITS)
        self._buffer = bytearray()
        self._eof = False
        self._size = 0

    def readable(self):
        return True

    def _fill(self, wanted):
        while not self._eof and (wanted is None or len(self._buffer) < wanted):
            chunk = self._source.read(_CHUNK_SIZE)
            if not chunk:
                self._buffer += self._compressor.flush()
                self._eof = True
            else:
                self._size += len(chunk)
                self._buffer += self._compressor.compress(chunk)

    def read(self, size=-1):
        """Return up to size compressed bytes; all remaining bytes when size is negative."""
        if self.closed:
            raise ValueError("read from a closed stream")
        if size is None or size < 0:
            self._fill(None)
            size = len(self._buffer)
        else:
            self._fill(size)
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    def readall(self):
        return self.read(-1)

    def readinto(self, buffer):
        data = self.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)

    def input_size(self):
        """Bytes read from the source so far; exact once the stream is exhausted."""
        return self._size

    def close(self):
        self._buffer.clear()
        super().close()


def compress(payload):
    """Wrap a binary stream or bytes so that reading yields gzip data."""
    return GzipStreamer(payload)