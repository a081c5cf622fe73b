import gzip
import io
import uuid
from dataclasses import dataclass

import pytest

from kustoingest.errors import Kind, KustoError, Op
from kustoingest.gzip_stream import compress
from kustoingest.properties import AllProperties, DataFormat
from kustoingest.streaming import Streaming, blob_uri_payload, stream_impl

DATA = (
    b",,,,\n"
    b"\t2020-03-10T20:59:30.694177Z,11196991-b193-4610-ae12-bcc03d092927,v0.0.1,"
    b"Hello world!,Jane Doe\n"
    b"\t2020-03-10T20:59:30.694177Z,,v0.0.2,,"
)
COMPRESSED = compress(DATA).read()


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


@pytest.fixture
def csv_path(tmp_path):
    path = tmp_path / "data.csv"
    path.write_bytes(DATA)
    return str(path)


def run(streaming, kind, path, **options):
    if kind == "file":
        return streaming.from_file(path, **options)
    return streaming.from_reader(io.BytesIO(DATA), **options)


KINDS = ["file", "reader"]


@pytest.mark.parametrize("kind", KINDS)
def test_streaming_default(kind, csv_path):
    ingestor = FakeIngestor()
    result = run(Streaming(ingestor, "defaultDb", "defaultTable"), kind, csv_path)
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert call.database == "defaultDb"
    assert call.table == "defaultTable"
    assert call.payload == COMPRESSED
    assert gzip.decompress(call.payload) == DATA
    assert call.data_format == DataFormat.CSV
    assert call.mapping_name == ""
    assert call.is_blob_uri is False
    parts = call.client_request_id.split(";")
    assert parts[0] == "KGC.executeStreaming"
    assert str(uuid.UUID(parts[1])) == parts[1]


@pytest.mark.parametrize("kind", KINDS)
def test_streaming_with_database_and_table(kind, csv_path):
    ingestor = FakeIngestor()
    streaming = Streaming(ingestor, "defaultDb", "defaultTable")
    result = run(streaming, kind, csv_path, database="otherDb", table="otherTable")
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert (call.database, call.table) == ("otherDb", "otherTable")
    assert call.payload == COMPRESSED
    assert call.data_format == DataFormat.CSV
    assert call.client_request_id.split(";")[0] == "KGC.executeStreaming"


@pytest.mark.parametrize("kind", KINDS)
def test_streaming_with_format(kind, csv_path):
    ingestor = FakeIngestor()
    result = run(Streaming(ingestor, "defaultDb", "defaultTable"), kind, csv_path, format=DataFormat.JSON)
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert call.payload == COMPRESSED
    assert call.data_format == DataFormat.JSON
    assert call.mapping_name == ""


@pytest.mark.parametrize("kind", KINDS)
def test_streaming_with_mapping_and_client_request_id(kind, csv_path):
    ingestor = FakeIngestor()
    result = run(
        Streaming(ingestor, "defaultDb", "defaultTable"),
        kind,
        csv_path,
        ingestion_mapping_ref=("mapping", DataFormat.CSV),
        client_request_id="clientRequestId",
    )
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert call.payload == COMPRESSED
    assert call.data_format == DataFormat.CSV
    assert call.mapping_name == "mapping"
    assert call.client_request_id == "clientRequestId"


@pytest.mark.parametrize("kind", KINDS)
def test_stream_failure_raises_the_kusto_error(kind, csv_path):
    def fail(call):
        raise KustoError(Op.INGEST_STREAM, Kind.HTTP_ERROR, "error")

    streaming = Streaming(FakeIngestor(fail), "defaultDb", "defaultTable")
    with pytest.raises(KustoError) as info:
        run(streaming, kind, csv_path)
    assert info.value == KustoError(Op.INGEST_STREAM, Kind.HTTP_ERROR, "error")


@pytest.mark.parametrize("kind", KINDS)
def test_other_errors_become_client_args_errors(kind, csv_path):
    def fail(call):
        raise RuntimeError("some error")

    streaming = Streaming(FakeIngestor(fail), "defaultDb", "defaultTable")
    with pytest.raises(KustoError) as info:
        run(streaming, kind, csv_path)
    assert info.value == KustoError(Op.INGEST_STREAM, Kind.CLIENT_ARGS, "some error")
    assert info.value.retryable is False


def test_blob_path_is_streamed_by_uri():
    ingestor = FakeIngestor()
    uri = "https://account.blob.core.windows.net/container/data.csv"
    result = Streaming(ingestor, "db", "tbl").from_file(uri)
    assert result.record.status == "Success"
    (call,) = ingestor.calls
    assert call.is_blob_uri is True
    assert call.payload == b'{"sourceUri":"' + uri.encode() + b'"}\n'
    assert call.data_format == DataFormat.CSV


def test_blob_uri_payload_escapes_html_characters():
    assert blob_uri_payload("https://a/b?x=<1>&y").read() == (
        b'{"sourceUri":"https://a/b?x=\\u003c1\\u003e\\u0026y"}\n'
    )


def test_unknown_option_is_rejected(csv_path):
    with pytest.raises(TypeError):
        Streaming(FakeIngestor(), "db", "tbl").from_file(csv_path, colour="blue")


def test_missing_local_file_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        Streaming(FakeIngestor(), "db", "tbl").from_file(str(tmp_path / "missing.csv"))


def test_delete_local_source_removes_file(tmp_path):
    path = tmp_path / "gone.csv"
    path.write_bytes(DATA)
    Streaming(FakeIngestor(), "db", "tbl").from_file(str(path), delete_local_source=True)
    assert not path.exists()


def test_dont_compress_sends_raw_bytes():
    ingestor = FakeIngestor()
    Streaming(ingestor, "db", "tbl").from_reader(DATA, dont_compress=True)
    assert ingestor.calls[0].payload == DATA


def test_stream_impl_does_not_change_caller_props():
    props = AllProperties()
    props.ingestion.database_name = "db"
    ingestor = FakeIngestor()
    stream_impl(ingestor, io.BytesIO(DATA), props, False)
    assert ingestor.calls[0].data_format == DataFormat.CSV
    assert props.ingestion.additional.format == DataFormat.DF_UNKNOWN


def test_close_closes_ingestor():
    ingestor = FakeIngestor()
    with Streaming(ingestor, "db", "tbl"):
        pass
    assert ingestor.closed is True