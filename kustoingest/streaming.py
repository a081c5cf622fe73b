"""Streaming ingestion: send data straight to the service without staging it in storage.

The stream ingestor supplied by the caller must offer
``stream_ingest(database, table, payload, data_format, mapping_name, client_request_id,
is_blob_uri)``, where ``payload`` is a readable binary stream, and ``close()``.
"""

from __future__ import annotations

import copy
import io
import json
import uuid

from .errors import Kind, KustoError, Op
from .gzip_stream import compress as gzip_compress
from .properties import (
    AllProperties,
    DataFormat,
    IngestionProps,
    IngestionReportLevel,
    IngestionReportMethod,
    ManagedStreamingProps,
    StreamingProps,
)
from .queued import complete_format_from_file_name, is_local_path, should_compress
from .result import IngestionResult
from .status import StatusCode
from .utils import CompressionType, compression_discovery

STREAMING_REQUEST_PREFIX = "KGC.executeStreaming"


def _set_database(props, value):
    props.ingestion.database_name = value


def _set_table(props, value):
    props.ingestion.table_name = value


def _set_format(props, value):
    props.ingestion.additional.format = DataFormat(value)


def _set_mapping_ref(props, value):
    name, data_format = value
    data_format = DataFormat(data_format)
    props.ingestion.additional.ingestion_mapping_ref = name
    props.ingestion.additional.ingestion_mapping_type = data_format.mapping_kind()
    props.ingestion.additional.format = data_format


def _set_client_request_id(props, value):
    props.streaming.client_request_id = value


def _set_dont_compress(props, value):
    props.source.dont_compress = bool(value)


def _set_compression_type(props, value):
    props.source.compression_type = CompressionType(value)


def _set_delete_local_source(props, value):
    props.source.delete_local_source = bool(value)


def _set_raw_data_size(props, value):
    props.ingestion.raw_data_size = int(value)


def _set_backoff(props, value):
    if not isinstance(value, ManagedStreamingProps):
        raise TypeError("backoff must be a ManagedStreamingProps")
    props.managed_streaming = value


def _set_flush_immediately(props, value):
    props.ingestion.flush_immediately = bool(value)


def _set_ignore_first_record(props, value):
    props.ingestion.additional.ignore_first_record = bool(value)


def _set_tags(props, value):
    props.ingestion.additional.tags = list(value)


def _set_ingest_if_not_exists(props, value):
    props.ingestion.additional.ingest_if_not_exists = value


def _set_report_method(props, value):
    props.ingestion.report_method = IngestionReportMethod(value)


def _set_report_level(props, value):
    props.ingestion.report_level = IngestionReportLevel(value)


_OPTION_HANDLERS = {
    "database": _set_database,
    "table": _set_table,
    "format": _set_format,
    "ingestion_mapping_ref": _set_mapping_ref,
    "client_request_id": _set_client_request_id,
    "dont_compress": _set_dont_compress,
    "compression_type": _set_compression_type,
    "delete_local_source": _set_delete_local_source,
    "raw_data_size": _set_raw_data_size,
    "backoff": _set_backoff,
    "flush_immediately": _set_flush_immediately,
    "ignore_first_record": _set_ignore_first_record,
    "tags": _set_tags,
    "ingest_if_not_exists": _set_ingest_if_not_exists,
    "report_method": _set_report_method,
    "report_level": _set_report_level,
}


def _apply_options(props, options):
    """Apply keyword ingestion options to the properties; unknown names raise TypeError."""
    for name, value in options.items():
        handler = _OPTION_HANDLERS.get(name)
        if handler is None:
            raise TypeError(f"unknown ingestion option: {name!r}")
        handler(props, value)


def _prep_file_and_props(path, props, options):
    """Apply options and, for a local file, complete the properties and open it.

    Returns ``(file, is_local)``; ``file`` is None for a remote blob.
    """
    _apply_options(props, options)

    if not is_local_path(path):
        return None, False

    props.source.original_source = path
    compression = compression_discovery(path)
    complete_format_from_file_name(props, path)
    props.source.dont_compress = not should_compress(props, compression)
    return open(path, "rb"), True


def _as_stream(reader):
    if isinstance(reader, (bytes, bytearray, memoryview)):
        return io.BytesIO(bytes(reader))
    return reader


def stream_impl(ingestor, payload, props, is_blob_uri):
    """Send one payload to the stream ingestor and return a successful result."""
    props = copy.deepcopy(props)
    payload = _as_stream(payload)
    if should_compress(props, CompressionType.UNKNOWN) and not is_blob_uri:
        payload = gzip_compress(payload)

    if props.ingestion.additional.format == DataFormat.DF_UNKNOWN:
        props.ingestion.additional.format = DataFormat.CSV

    try:
        ingestor.stream_ingest(
            props.ingestion.database_name,
            props.ingestion.table_name,
            payload,
            DataFormat(props.ingestion.additional.format),
            props.ingestion.additional.ingestion_mapping_ref,
            props.streaming.client_request_id,
            is_blob_uri,
        )
    except KustoError:
        raise
    except Exception as exc:
        raise KustoError(Op.INGEST_STREAM, Kind.CLIENT_ARGS, str(exc)) from exc

    props.apply_delete_local_source()

    result = IngestionResult()
    result.put_props(props)
    result.record.status = StatusCode("Success")
    return result


def blob_uri_payload(path):
    """The JSON body that asks the service to stream-ingest a blob by its URI."""
    text = json.dumps({"sourceUri": path}, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (
        ("<", "\\u003c"),
        (">", "\\u003e"),
        ("&", "\\u0026"),
        ("\u2028", "\\u2028"),
        ("\u2029", "\\u2029"),
    ):
        text = text.replace(char, escaped)
    return io.BytesIO((text + "\n").encode("utf-8"))


class Streaming:
    """Ingests local files, blobs and streams by streaming them to the service."""

    def __init__(self, ingestor, database="", table=""):
        self.ingestor = ingestor
        self.database = database
        self.table = table

    def _new_props(self):
        return AllProperties(
            ingestion=IngestionProps(database_name=self.database, table_name=self.table),
            streaming=StreamingProps(
                client_request_id=f"{STREAMING_REQUEST_PREFIX};{uuid.uuid4()}"
            ),
        )

    def from_file(self, path, **kwargs):
        """Stream a local file, or a blob given by its https URI."""
        props = self._new_props()
        handle, local = _prep_file_and_props(path, props, kwargs)
        if not local:
            return stream_impl(self.ingestor, blob_uri_payload(path), props, True)
        with handle:
            return stream_impl(self.ingestor, handle, props, False)

    def from_reader(self, reader, **kwargs):
        """Stream the contents of a binary stream or bytes; the data is gzipped on the way."""
        props = self._new_props()
        _apply_options(props, kwargs)
        return stream_impl(self.ingestor, _as_stream(reader), props, False)

    def close(self):
        """Close the stream ingestor."""
        self.ingestor.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()