"""Managed ingestion: stream small payloads, fall back to queued ingestion otherwise."""

from __future__ import annotations

import copy
import io
import time
import uuid

from .errors import KustoError, is_retryable
from .gzip_stream import GzipStreamer
from .properties import AllProperties, IngestionProps, ManagedStreamingProps
from .queued import should_compress
from .result import IngestionResult
from .status import StatusCode
from .streaming import _apply_options, _as_stream, _prep_file_and_props, blob_uri_payload, stream_impl
from .utils import (
    ESTIMATED_COMPRESSION_FACTOR,
    CompressionType,
    compression_discovery,
    estimate_raw_data_size,
)

MB = 1024 * 1024
MAX_STREAMING_SIZE = 4 * MB
RETRY_COUNT = 2
MANAGED_REQUEST_PREFIX = "KGC.executeManagedStreamingIngest"


def should_use_queued_ingest_by_size(compression, file_size):
    """Whether a payload is too large to stream, estimating its uncompressed size."""
    if compression in (CompressionType.GZIP, CompressionType.ZIP):
        return file_size > MAX_STREAMING_SIZE
    return file_size // ESTIMATED_COMPRESSION_FACTOR > MAX_STREAMING_SIZE


def _read_up_to(stream, limit):
    chunks = []
    remaining = limit
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


class _ConcatReader(io.RawIOBase):
    """Reads several binary streams one after another."""

    def __init__(self, *streams):
        super().__init__()
        self._streams = list(streams)

    def readable(self):
        return True

    def readinto(self, buffer):
        while self._streams:
            data = self._streams[0].read(len(buffer))
            if data:
                buffer[: len(data)] = data
                return len(data)
            self._streams.pop(0)
        return 0


class Managed:
    """Streams data when it is small enough and the service accepts it, else queues it.

    ``queued`` offers ``reader(reader, props)``, ``blob(source, file_size, props)`` and
    ``close()``. ``blob_size_fetcher`` optionally returns the stored size of a blob URI.
    """

    def __init__(self, queued, streaming, blob_size_fetcher=None):
        self.queued = queued
        self.streaming = streaming
        self.blob_size_fetcher = blob_size_fetcher

    def _new_props(self):
        return AllProperties(
            ingestion=IngestionProps(
                database_name=self.streaming.database, table_name=self.streaming.table
            ),
            managed_streaming=ManagedStreamingProps(),
        )

    def _stream_with_retries(self, payload_provider, props, is_blob_uri):
        """Stream with retries; None when transient failures persist and queuing should follow."""
        props = copy.deepcopy(props)
        custom_id = bool(props.streaming.client_request_id)
        managed_id = uuid.uuid4()
        delays = props.managed_streaming.intervals(RETRY_COUNT)
        attempt = 0
        while True:
            if not custom_id:
                props.streaming.client_request_id = (
                    f"{MANAGED_REQUEST_PREFIX};{managed_id};{attempt}"
                )
            attempt += 1
            try:
                return stream_impl(self.streaming.ingestor, payload_provider(), props, is_blob_uri)
            except KustoError as exc:
                if not is_retryable(exc):
                    raise
            delay = next(delays, None)
            if delay is None:
                return None
            time.sleep(max(0.0, delay))

    @staticmethod
    def _queued_result(props):
        result = IngestionResult()
        result.put_props(props)
        result.record.status = StatusCode.QUEUED
        return result

    def from_file(self, path, **kwargs):
        """Ingest a local file or a blob URI."""
        props = self._new_props()
        handle, local = _prep_file_and_props(path, props, kwargs)

        if local:
            with handle:
                return self._managed_stream(handle, props)

        size = props.ingestion.raw_data_size
        if size == 0:
            size = self.blob_size_fetcher(path) if self.blob_size_fetcher is not None else 0
            compression = compression_discovery(path)
            props.ingestion.raw_data_size = estimate_raw_data_size(compression, size)
        else:
            # A size given by the caller is the raw size, so always estimate from it.
            compression = CompressionType.NONE

        if not should_use_queued_ingest_by_size(compression, size):
            result = self._stream_with_retries(lambda: blob_uri_payload(path), props, True)
            if result is not None:
                return result

        self.queued.blob(path, props.ingestion.raw_data_size, props)
        return self._queued_result(props)

    def from_reader(self, reader, **kwargs):
        """Ingest the contents of a binary stream or bytes; the stream is not closed."""
        props = self._new_props()
        _apply_options(props, kwargs)
        return self._managed_stream(_as_stream(reader), props)

    def _managed_stream(self, payload, props):
        source = payload
        if should_compress(props, CompressionType.UNKNOWN):
            source = GzipStreamer(payload)
            props.source.dont_compress = True

        buf = _read_up_to(source, MAX_STREAMING_SIZE + 1)

        if should_use_queued_ingest_by_size(CompressionType.GZIP, len(buf)):
            self.queued.reader(_ConcatReader(io.BytesIO(buf), source), props)
            return self._queued_result(props)

        result = self._stream_with_retries(lambda: io.BytesIO(buf), props, False)
        if result is not None:
            return result

        # The whole payload fit in the buffer, so it is all that needs queuing.
        self.queued.reader(io.BytesIO(buf), props)
        return self._queued_result(props)

    def close(self):
        """Close both clients; the first failure is raised after both were tried."""
        failures = []
        for closer in (self.queued.close, self.streaming.close):
            try:
                closer()
            except Exception as exc:
                failures.append(exc)
        if failures:
            raise failures[0]

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()