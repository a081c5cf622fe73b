"""Queued ingestion: upload data to blob storage and enqueue it for the service.

The storage backend is supplied by the caller and must offer:

* ``upload_stream(container, blob_name, reader, block_size, concurrency)``
* ``upload_file(container, blob_name, file, block_size, concurrency)``
* ``enqueue_message(queue, message)``

where ``container`` and ``queue`` are :class:`~kustoingest.resources.ResourceURI`
objects. Any exception raised by these methods counts as a failed attempt.
"""

from __future__ import annotations

import copy
import datetime as _dt
import os
import uuid
from urllib.parse import quote, urlsplit, urlunsplit

from .errors import Kind, KustoError, Op, is_retryable
from .gzip_stream import GzipStreamer
from .properties import DataFormat, data_format_discovery
from .utils import CompressionType, compression_discovery

MIB = 1024 * 1024

# Tuned from storage-to-storage copy measurements; do not change without evidence.
BLOCK_SIZE = 8 * MIB
CONCURRENCY = 50
STORAGE_MAX_RETRY_POLICY = 3


def _error(message, kind=Kind.BLOBSTORE):
    return KustoError(Op.FILE_INGEST, kind, message)


def _now():
    return _dt.datetime.now().astimezone()


def _format_time(value):
    """Render a timestamp as 'YYYY-MM-DD HH:MM:SS[.frac] +HHMM ZONE'."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    text = value.strftime("%Y-%m-%d %H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.strftime("%z") or "+0000"
    zone = value.tzname() or "UTC"
    return f"{text} {offset} {zone}"


def _base_name(path):
    """Last element of a path; '.' for an empty path, '/' for a path of separators."""
    if not path:
        return "."
    separators = "/" + (os.sep if os.sep != "/" else "") + (os.altsep or "")
    stripped = path.rstrip(separators)
    if not stripped:
        return "/"
    for sep in separators:
        stripped = stripped.rsplit(sep, 1)[-1]
    return stripped


def _full_url(container, blob_name):
    parts = urlsplit(str(container))
    path = "/" + container.object_name.strip("/") + "/" + quote(blob_name, safe="")
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, ""))


def complete_format_from_file_name(props, source):
    """Fill in the data format from the source name when it was not given; CSV if unknown."""
    if props.ingestion.additional.format != DataFormat.DF_UNKNOWN:
        return
    detected = data_format_discovery(source)
    if detected == DataFormat.DF_UNKNOWN:
        detected = DataFormat.CSV
    props.ingestion.additional.format = detected


def gen_blob_name(
    database_name, table_name, time, guid, file_name, compression, should_compress, data_format
):
    """Build the name of the blob that a source is uploaded to."""
    extension = "gz" if should_compress else data_format
    return f"{database_name}_{table_name}_{_format_time(time)}_{guid}_{file_name}.{extension}"


def should_compress(props, compression):
    """Whether the client should gzip the source before uploading it.

    Not when the caller said so, when the source is already compressed (as declared
    or as seen from its extension), or when the format is binary.
    """
    if props.source.dont_compress:
        return False

    declared = props.source.compression_type
    if declared is not CompressionType.UNKNOWN:
        if declared is not CompressionType.NONE:
            return False
    elif compression not in (CompressionType.UNKNOWN, CompressionType.NONE):
        return False

    return DataFormat(props.ingestion.additional.format).should_compress()


def is_local_path(path):
    """True for an existing local file, False for an http(s) URL.

    Raises ValueError for anything else, such as a directory or another URL scheme.
    """
    try:
        scheme = urlsplit(path).scheme
    except ValueError:
        scheme = ""
    if scheme in ("http", "https"):
        return False

    try:
        info = os.stat(path)
    except (OSError, ValueError) as exc:
        raise ValueError(
            "It is not a valid local file path (could not stat file) and not a valid blob path"
        ) from exc

    if os.path.isdir(path) or not _is_regular_or_other(info):
        raise ValueError("path is a local directory and not a valid file")
    return True


def _is_regular_or_other(info):
    import stat as _stat

    return not _stat.S_ISDIR(info.st_mode)


class QueuedUploader:
    """Uploads sources to blob storage and enqueues them for ingestion into one table."""

    def __init__(
        self,
        db,
        table,
        manager,
        storage,
        application_for_tracing="",
        client_version_for_tracing="",
        buffer_size=0,
        max_buffers=0,
    ):
        self.db = db
        self.table = table
        self._manager = manager
        self._storage = storage
        self.application_for_tracing = application_for_tracing
        self.client_version_for_tracing = client_version_for_tracing
        self.buffer_size = buffer_size
        self.max_buffers = max_buffers

    def _ranked_containers_checked(self):
        containers = self._manager.get_ranked_storage_containers()
        if not containers:
            raise _error(
                "no Blob Storage container resources are defined, there is no container to upload to"
            ).set_no_retry()

        # Make sure a queue exists before spending time on an upload.
        if not self._manager.get_ranked_storage_queues():
            raise _error(
                "no Kusto queue resources are defined, there is no queue to upload to"
            ).set_no_retry()
        return containers

    def local(self, source, props):
        """Upload a local file and enqueue it for ingestion."""
        containers = self._ranked_containers_checked()

        for attempt, container in enumerate(containers):
            if attempt >= STORAGE_MAX_RETRY_POLICY:
                raise _error("max retry policy reached").set_no_retry()
            try:
                url, size = self._local_to_blob(source, container, props)
            except KustoError as exc:
                if not is_retryable(exc):
                    raise
                self._manager.report_storage_resource_result(container.account, False)
                continue
            self._manager.report_storage_resource_result(container.account, True)
            return self.blob(url, size, props)

        raise _error("could not upload file to any container")

    def _local_to_blob(self, source, container, props):
        compression = compression_discovery(source)
        compress = should_compress(props, compression)
        blob_name = gen_blob_name(
            self.db,
            self.table,
            _now(),
            _base_name(str(uuid.uuid4())),
            _base_name(source),
            compression,
            compress,
            DataFormat(props.ingestion.additional.format).json_name(),
        )

        try:
            handle = open(source, "rb")
        except (OSError, ValueError) as exc:
            raise _error(
                f'problem retrieving source file "{source}": {exc}', Kind.LOCAL_FILE_SYSTEM
            ).set_no_retry() from exc

        with handle:
            try:
                file_size = os.fstat(handle.fileno()).st_size
            except OSError as exc:
                raise _error(
                    f"could not Stat the file({source}): {exc}", Kind.LOCAL_FILE_SYSTEM
                ).set_no_retry() from exc

            if compress:
                stream = GzipStreamer(handle)
                try:
                    self._storage.upload_stream(
                        container, blob_name, stream, self.buffer_size, self.max_buffers
                    )
                except Exception as exc:
                    raise _error(f"problem uploading to Blob Storage: {exc}") from exc
                return _full_url(container, blob_name), stream.input_size()

            try:
                self._storage.upload_file(container, blob_name, handle, BLOCK_SIZE, CONCURRENCY)
            except Exception as exc:
                raise _error(f"problem uploading to Blob Storage: {exc}") from exc
            return _full_url(container, blob_name), file_size

    def reader(self, reader, props):
        """Upload the contents of a binary stream and enqueue it; return the blob name."""
        containers = self._ranked_containers_checked()

        compression = compression_discovery(props.source.original_source)
        compress = should_compress(props, compression)
        blob_name = gen_blob_name(
            self.db,
            self.table,
            _now(),
            _base_name(str(uuid.uuid4())),
            _base_name(props.source.original_source),
            compression,
            compress,
            DataFormat(props.ingestion.additional.format).json_name(),
        )

        if compress:
            reader = GzipStreamer(reader)

        for attempt, container in enumerate(containers):
            if attempt >= STORAGE_MAX_RETRY_POLICY:
                raise _error("max retry policy reached").set_no_retry()
            try:
                self._storage.upload_stream(
                    container, blob_name, reader, self.buffer_size, self.max_buffers
                )
            except Exception:
                self._manager.report_storage_resource_result(container.account, False)
                continue

            self._manager.report_storage_resource_result(container.account, True)
            size = reader.input_size() if isinstance(reader, GzipStreamer) else 0
            self.blob(_full_url(container, blob_name), size, props)
            return blob_name

        raise _error("problem uploading to Blob Storage")

    def blob(self, source, file_size, props):
        """Enqueue a blob that already exists in storage for ingestion."""
        props = copy.deepcopy(props)
        ingestion = props.ingestion
        ingestion.blob_path = source
        if file_size:
            ingestion.raw_data_size = file_size
        ingestion.retain_blob_on_success = not props.source.delete_local_source
        ingestion.application_for_tracing = self.application_for_tracing
        ingestion.client_version_for_tracing = self.client_version_for_tracing

        complete_format_from_file_name(props, source)

        if not ingestion.additional.auth_context:
            ingestion.additional.auth_context = self._manager.auth_context()

        try:
            message = ingestion.to_base64_json()
        except ValueError as exc:
            raise _error(
                f"could not marshal the ingestion blob info: {exc}", Kind.INTERNAL
            ).set_no_retry() from exc

        queues = self._manager.get_ranked_storage_queues()
        for attempt, queue in enumerate(queues):
            if attempt >= STORAGE_MAX_RETRY_POLICY:
                raise _error("max retry policy reached").set_no_retry()
            try:
                self._storage.enqueue_message(queue, message)
            except Exception:
                self._manager.report_storage_resource_result(queue.account, False)
                continue
            self._manager.report_storage_resource_result(queue.account, True)
            props.apply_delete_local_source()
            return

        raise _error("could not upload file to any queue")

    def close(self):
        """Stop the resource manager."""
        self._manager.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()