import gzip
import io
import uuid
from dataclasses import dataclass

import pytest

from kustoingest.errors import Kind, KustoError, Op
from kustoingest.gzip_stream import compress
from kustoingest.managed import MAX_STREAMING_SIZE, Managed, should_use_queued_ingest_by_size
from kustoingest.properties import DataFormat, ManagedStreamingProps
from kustoingest.status import StatusCode
from kustoingest.streaming import Streaming
from kustoingest.utils import CompressionType

DATA = (
    b",,,,\n"
    b"\t2020-03-10T20:59:30.694177Z,11196991-b193-4610-ae12-bcc03d092927,v0.0.1,"
    b"Hello world!,Jane Doe\n"
    b"\t2020-03-10T20:59:30.694177Z,,v0.0.2,,"
)
BIG_DATA = (
    b",,,,\n"
    b"\t2020-03-10T20:59:30.694177Z,11196991-b193-4610-ae12-bcc03d092927,v0.0.1,"
    + b"Hello world!" * (400 * 1024)
    + b",Jane Doe\n\t2020-03-10T20:59:30.694177Z,,v0.0.2,,"
)
COMPRESSED = compress(DATA).read()
SOME_BLOB = "https://some-blob.blob.core.windows.net/some-container/some-blob;Managed_Identity="
FAST = ManagedStreamingProps(initial_interval=0.001, max_interval=0.001)


@dataclass
class StreamCall:
    database: str
    table: str
    payload: bytes
    data_format: DataFormat
    mapping_name: str
    client_request_id: str
    is_blob_uri: bool


class FakeIngestor:
    def __init__(self, handler=None):
        self.handler = handler
        self.calls = []
        self.closed = False

    def stream_ingest(
        self, database, table, payload, data_format, mapping_name, client_request_id, is_blob_uri
    ):
        call = StreamCall(
            database, table, payload.read(), data_format, mapping_name, client_request_id, is_blob_uri
        )
        self.calls.append(call)
        if self.handler is not None:
            self.handler(call)

    def close(self):
        self.closed = True


class FakeQueued:
    def __init__(self):
        self.reader_calls = []
        self.blob_calls = []
        self.closed = False

    def reader(self, reader, props):
        self.reader_calls.append((reader.read(), props))
        return ""

    def blob(self, source, file_size, props):
        self.blob_calls.append((source, file_size, props))

    def close(self):
        self.closed = True


def make(handler=None, fetcher=None):
    ingestor = FakeIngestor(handler)
    queued = FakeQueued()
    managed = Managed(queued, Streaming(ingestor, "defaultDb", "defaultTable"), fetcher)
    return managed, ingestor, queued


def fail_times(count, error_factory):
    state = {"left": count}

    def handler(call):
        if state["left"] > 0:
            state["left"] -= 1
            raise error_factory()

    return handler


def transient():
    return KustoError(Op.INGEST_STREAM, Kind.HTTP_ERROR, "error")


@pytest.fixture
def csv_path(tmp_path):
    path = tmp_path / "data.csv"
    path.write_bytes(DATA)
    return str(path)


def run(managed, kind, path, data=DATA, **options):
    options.setdefault("backoff", FAST)
    if kind == "file":
        return managed.from_file(path, **options)
    return managed.from_reader(io.BytesIO(data), **options)


KINDS = ["file", "reader"]


@pytest.mark.parametrize("kind", KINDS)
def test_managed_streaming_default(kind, csv_path):
    managed, ingestor, queued = make()
    result = run(managed, kind, csv_path)
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert (call.database, call.table) == ("defaultDb", "defaultTable")
    assert call.payload == COMPRESSED
    assert call.data_format == DataFormat.CSV
    assert call.mapping_name == ""
    parts = call.client_request_id.split(";")
    assert parts[0] == "KGC.executeManagedStreamingIngest"
    assert str(uuid.UUID(parts[1])) == parts[1]
    assert parts[2] == "0"
    assert queued.reader_calls == [] and queued.blob_calls == []


@pytest.mark.parametrize("kind", KINDS)
def test_managed_streaming_with_database_and_table(kind, csv_path):
    managed, ingestor, _ = make()
    result = run(managed, kind, csv_path, database="otherDb", table="otherTable")
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert (call.database, call.table) == ("otherDb", "otherTable")
    assert call.payload == COMPRESSED


@pytest.mark.parametrize("kind", KINDS)
def test_managed_streaming_with_format(kind, csv_path):
    managed, ingestor, _ = make()
    result = run(managed, kind, csv_path, format=DataFormat.JSON)
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert call.data_format == DataFormat.JSON
    assert call.payload == COMPRESSED


@pytest.mark.parametrize("kind", KINDS)
def test_managed_with_mapping_and_client_request_id(kind, csv_path):
    managed, ingestor, _ = make()
    result = run(
        managed,
        kind,
        csv_path,
        ingestion_mapping_ref=("mapping", DataFormat.CSV),
        client_request_id="clientRequestId",
    )
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert call.mapping_name == "mapping"
    assert call.client_request_id == "clientRequestId"
    assert call.payload == COMPRESSED


@pytest.mark.parametrize("kind", KINDS)
def test_permanent_error(kind, csv_path):
    managed, ingestor, queued = make(
        fail_times(10, lambda: transient().set_no_retry())
    )
    with pytest.raises(KustoError) as info:
        run(managed, kind, csv_path)
    assert info.value == KustoError(Op.INGEST_STREAM, Kind.HTTP_ERROR, "error").set_no_retry()
    assert len(ingestor.calls) == 1
    assert queued.reader_calls == []


@pytest.mark.parametrize("kind", KINDS)
def test_permanent_error_not_kusto(kind, csv_path):
    managed, ingestor, _ = make(fail_times(10, lambda: RuntimeError("some error")))
    with pytest.raises(KustoError) as info:
        run(managed, kind, csv_path)
    assert info.value == KustoError(Op.INGEST_STREAM, Kind.CLIENT_ARGS, "some error")
    assert len(ingestor.calls) == 1


@pytest.mark.parametrize("kind", KINDS)
def test_single_transient_error(kind, csv_path):
    managed, ingestor, queued = make(fail_times(1, transient))
    result = run(managed, kind, csv_path)
    assert result.record.status == "Success"
    assert len(ingestor.calls) == 2
    assert ingestor.calls[1].client_request_id.endswith(";1")
    assert queued.reader_calls == []


@pytest.mark.parametrize("kind", KINDS)
def test_multiple_transient_errors_fall_back_to_queued(kind, csv_path):
    managed, ingestor, queued = make(fail_times(10, transient))
    result = run(managed, kind, csv_path)
    assert result.record.status == StatusCode.QUEUED
    assert len(ingestor.calls) == 3
    assert len(queued.reader_calls) == 1
    data, props = queued.reader_calls[0]
    assert data == COMPRESSED
    assert (props.ingestion.database_name, props.ingestion.table_name) == (
        "defaultDb",
        "defaultTable",
    )


@pytest.mark.parametrize("kind", KINDS)
def test_big_file_goes_to_queued(kind, tmp_path):
    path = tmp_path / "big.csv"
    path.write_bytes(BIG_DATA)
    managed, ingestor, queued = make(fail_times(10, transient))
    result = run(managed, kind, str(path), data=BIG_DATA, dont_compress=True)
    assert result.record.status == StatusCode.QUEUED
    assert ingestor.calls == []
    assert len(queued.reader_calls) == 1
    assert queued.reader_calls[0][0] == BIG_DATA


def test_blob_falls_back_to_queued():
    managed, ingestor, queued = make(fail_times(10, transient))
    result = managed.from_file(SOME_BLOB, backoff=FAST)
    assert result.record.status == StatusCode.QUEUED
    assert len(ingestor.calls) == 3
    assert all(call.is_blob_uri for call in ingestor.calls)
    source, _, props = queued.blob_calls[0]
    assert source == SOME_BLOB
    assert props.ingestion.database_name == "defaultDb"
    assert props.ingestion.table_name == "defaultTable"


def test_blob_streams_when_service_accepts():
    managed, ingestor, queued = make()
    result = managed.from_file(SOME_BLOB, backoff=FAST)
    assert result.record.status == "Success"
    assert ingestor.calls[0].payload == b'{"sourceUri":"' + SOME_BLOB.encode() + b'"}\n'
    assert queued.blob_calls == []


def test_large_blob_is_queued_without_streaming():
    size = 100 * 1024 * 1024
    managed, ingestor, queued = make(fetcher=lambda path: size)
    uri = "https://account.blob.core.windows.net/container/data.csv"
    result = managed.from_file(uri, backoff=FAST)
    assert result.record.status == StatusCode.QUEUED
    assert ingestor.calls == []
    assert queued.blob_calls[0][2].ingestion.raw_data_size == size


def test_compressed_blob_under_limit_streams():
    managed, ingestor, _ = make(fetcher=lambda path: 1024 * 1024)
    uri = "https://account.blob.core.windows.net/container/data.csv.gz"
    result = managed.from_file(uri, backoff=FAST)
    assert result.record.status == "Success"
    assert len(ingestor.calls) == 1


def test_uncompressed_reader_payload_is_gzipped_once(csv_path):
    managed, ingestor, _ = make()
    run(managed, "reader", csv_path)
    assert gzip.decompress(ingestor.calls[0].payload) == DATA


@pytest.mark.parametrize(
    "compression, size, expected",
    [
        (CompressionType.GZIP, MAX_STREAMING_SIZE, False),
        (CompressionType.GZIP, MAX_STREAMING_SIZE + 1, True),
        (CompressionType.ZIP, MAX_STREAMING_SIZE + 1, True),
        (CompressionType.NONE, MAX_STREAMING_SIZE * 11, False),
        (CompressionType.NONE, MAX_STREAMING_SIZE * 11 + 11, True),
    ],
)
def test_should_use_queued_ingest_by_size(compression, size, expected):
    assert should_use_queued_ingest_by_size(compression, size) is expected


def test_close_closes_both_clients():
    managed, ingestor, queued = make()
    managed.close()
    assert ingestor.closed is True
    assert queued.closed is True