"""Ingestion properties sent to the service, and how to detect data formats."""

from __future__ import annotations

import base64
import dataclasses
import datetime as _dt
import enum
import json
import os
import random
import uuid
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from .errors import Kind, KustoError, Op
from .utils import CompressionType

NIL_UUID = uuid.UUID(int=0)
_ZERO_TIME_TEXT = "0001-01-01T00:00:00Z"


class DataFormat(enum.IntEnum):
    """Encoding of the source data."""

    DF_UNKNOWN = 0
    AVRO = 1
    APACHE_AVRO = 2
    CSV = 3
    JSON = 4
    MULTI_JSON = 5
    ORC = 6
    PARQUET = 7
    PSV = 8
    RAW = 9
    SCSV = 10
    SOHSV = 11
    SSTREAM = 12
    TSV = 13
    TSVE = 14
    TXT = 15
    W3CLOGFILE = 16
    SINGLE_JSON = 17

    def _descriptor(self):
        return _DESCRIPTIONS[self]

    def json_name(self):
        """Lower-case name used for the data format; empty for an unknown format."""
        return self._descriptor().json_name if self else ""

    def camel_case(self):
        """CamelCase name used for the mapping type; empty for an unknown format."""
        return self._descriptor().camel_name if self else ""

    def mapping_kind(self):
        """The format whose mapping kind this format uses."""
        return self._descriptor().mapping_kind

    def should_compress(self):
        """Whether data in this format benefits from gzip compression."""
        return self._descriptor().should_compress if self else True

    def known_or_default(self):
        """This format, or CSV when the format is unknown."""
        return DataFormat.CSV if self is DataFormat.DF_UNKNOWN else self

    def __str__(self):
        return self.json_name()


@dataclass(frozen=True)
class _Descriptor:
    camel_name: str
    json_name: str
    detectable_ext: str
    mapping_kind: DataFormat
    should_compress: bool


_DESCRIPTIONS = {
    DataFormat.DF_UNKNOWN: _Descriptor("", "", "", DataFormat.DF_UNKNOWN, True),
    DataFormat.AVRO: _Descriptor("Avro", "avro", ".avro", DataFormat.AVRO, False),
    DataFormat.APACHE_AVRO: _Descriptor("ApacheAvro", "avro", "", DataFormat.AVRO, False),
    DataFormat.CSV: _Descriptor("Csv", "csv", ".csv", DataFormat.CSV, True),
    DataFormat.JSON: _Descriptor("Json", "json", ".json", DataFormat.JSON, True),
    DataFormat.MULTI_JSON: _Descriptor("MultiJson", "multijson", "", DataFormat.JSON, True),
    DataFormat.ORC: _Descriptor("Orc", "orc", ".orc", DataFormat.ORC, False),
    DataFormat.PARQUET: _Descriptor("Parquet", "parquet", ".parquet", DataFormat.PARQUET, False),
    DataFormat.PSV: _Descriptor("Psv", "psv", ".psv", DataFormat.CSV, True),
    DataFormat.RAW: _Descriptor("Raw", "raw", ".raw", DataFormat.CSV, True),
    DataFormat.SCSV: _Descriptor("Scsv", "scsv", ".scsv", DataFormat.CSV, True),
    DataFormat.SOHSV: _Descriptor("Sohsv", "sohsv", ".sohsv", DataFormat.CSV, True),
    DataFormat.SSTREAM: _Descriptor("SStream", "sstream", ".ss", DataFormat.DF_UNKNOWN, False),
    DataFormat.TSV: _Descriptor("Tsv", "tsv", ".tsv", DataFormat.CSV, True),
    DataFormat.TSVE: _Descriptor("Tsve", "tsve", ".tsve", DataFormat.CSV, True),
    DataFormat.TXT: _Descriptor("Txt", "txt", ".txt", DataFormat.CSV, True),
    DataFormat.W3CLOGFILE: _Descriptor(
        "W3cLogFile", "w3clogfile", ".w3clogfile", DataFormat.W3CLOGFILE, True
    ),
    DataFormat.SINGLE_JSON: _Descriptor("SingleJson", "singlejson", "", DataFormat.JSON, True),
}


def _file_extension(name):
    base = name
    for sep in {"/", os.sep, os.altsep or "/"}:
        base = base.rsplit(sep, 1)[-1]
    dot = base.rfind(".")
    return base[dot:] if dot != -1 else ""


def data_format_discovery(name):
    """Guess the data format of a file or URL from its extension."""
    path = name
    try:
        parts = urlsplit(name)
    except ValueError:
        parts = None
    if parts is not None and parts.scheme:
        path = parts.path

    lowered = path.lower()
    lowered = lowered.removesuffix(".gz").removesuffix(".zip")
    ext = _file_extension(lowered).lower()
    if not ext:
        return DataFormat.DF_UNKNOWN

    for fmt, desc in _DESCRIPTIONS.items():
        if fmt is not DataFormat.DF_UNKNOWN and ext == desc.detectable_ext:
            return fmt
    return DataFormat.DF_UNKNOWN


class IngestionReportLevel(enum.IntEnum):
    """Which ingestion outcomes the service reports."""

    FAILURES_ONLY = 0
    NONE = 1
    FAILURE_AND_SUCCESS = 2


class IngestionReportMethod(enum.IntEnum):
    """Where the service reports ingestion outcomes."""

    QUEUE = 0
    TABLE = 1
    QUEUE_AND_TABLE = 2
    AZURE_MONITORING = 3


def _format_time(value):
    """Format a timestamp the way the service expects (RFC 3339 with trimmed fraction)."""
    if value is None:
        return _ZERO_TIME_TEXT
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or _dt.timedelta(0)
    if offset == _dt.timedelta(0):
        return text + "Z"
    sign = "+" if offset >= _dt.timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


@dataclass
class StatusTableDescription:
    """Reference to the status table entry used to report an ingestion."""

    table_connection_string: str = ""
    partition_key: str = ""
    row_key: str = ""

    def to_dict(self):
        data = {}
        if self.table_connection_string:
            data["TableConnectionString"] = self.table_connection_string
        if self.partition_key:
            data["PartitionKey"] = self.partition_key
        if self.row_key:
            data["RowKey"] = self.row_key
        return data


@dataclass
class Additional:
    """Extra properties attached to an ingestion command."""

    auth_context: str = ""
    ingestion_mapping: str = ""
    ingestion_mapping_ref: str = ""
    ingestion_mapping_type: DataFormat = DataFormat.DF_UNKNOWN
    validation_policy: str = ""
    format: DataFormat = DataFormat.DF_UNKNOWN
    ignore_first_record: bool = False
    tags: list = field(default_factory=list)
    ingest_if_not_exists: str = ""
    creation_time: _dt.datetime | None = None

    def to_dict(self):
        """JSON-ready mapping with keys in sorted order; empty optional values are left out."""
        data = {}
        if self.auth_context:
            data["authorizationContext"] = self.auth_context
        if self.ingestion_mapping:
            data["ingestionMapping"] = self.ingestion_mapping
        if self.ingestion_mapping_ref:
            data["ingestionMappingReference"] = self.ingestion_mapping_ref
        if self.ingestion_mapping_type:
            # The service matches the mapping type in CamelCase, unlike the format.
            data["ingestionMappingType"] = DataFormat(self.ingestion_mapping_type).camel_case()
        if self.validation_policy:
            data["validationPolicy"] = self.validation_policy
        if self.format:
            data["format"] = DataFormat(self.format).json_name()
        data["ignoreFirstRecord"] = self.ignore_first_record
        if self.tags:
            data["tags"] = list(self.tags)
        if self.ingest_if_not_exists:
            data["ingestIfNotExists"] = self.ingest_if_not_exists
        data["creationTime"] = _format_time(self.creation_time)
        return dict(sorted(data.items()))


@dataclass
class IngestionProps:
    """The ingestion properties serialized and sent to the service."""

    id: uuid.UUID = NIL_UUID
    blob_path: str = ""
    database_name: str = ""
    table_name: str = ""
    raw_data_size: int = 0
    retain_blob_on_success: bool = False
    flush_immediately: bool = False
    ignore_size_limit: bool = False
    report_level: IngestionReportLevel = IngestionReportLevel.FAILURES_ONLY
    report_method: IngestionReportMethod = IngestionReportMethod.QUEUE
    source_message_creation_time: _dt.datetime | None = None
    additional: Additional = field(default_factory=Additional)
    table_entry_ref: StatusTableDescription = field(default_factory=StatusTableDescription)
    application_for_tracing: str = ""
    client_version_for_tracing: str = ""

    def to_dict(self):
        """JSON-ready mapping in the service's field order."""
        data = {
            "Id": str(self.id),
            "BlobPath": self.blob_path,
            "DatabaseName": self.database_name,
            "TableName": self.table_name,
        }
        if self.raw_data_size:
            data["RawDataSize"] = self.raw_data_size
        if self.retain_blob_on_success:
            data["RetainBlobOnSuccess"] = True
        data["FlushImmediately"] = self.flush_immediately
        if self.ignore_size_limit:
            data["IgnoreSizeLimit"] = True
        if self.report_level:
            data["ReportLevel"] = int(self.report_level)
        if self.report_method:
            data["ReportMethod"] = int(self.report_method)
        data["SourceMessageCreationTime"] = _format_time(self.source_message_creation_time)
        data["AdditionalProperties"] = self.additional.to_dict()
        data["IngestionStatusInTable"] = self.table_entry_ref.to_dict()
        if self.application_for_tracing:
            data["ApplicationForTracing"] = self.application_for_tracing
        if self.client_version_for_tracing:
            data["ClientVersionForTracing"] = self.client_version_for_tracing
        return data

    def _with_defaults(self):
        updated = dataclasses.replace(self)
        if updated.id == NIL_UUID:
            updated.id = uuid.uuid4()
        if updated.source_message_creation_time is None:
            updated.source_message_creation_time = _dt.datetime.now(_dt.timezone.utc)
        return updated

    def _validate(self):
        if self.id == NIL_UUID:
            raise ValueError("the ID cannot be an zero value UUID")
        if not self.database_name:
            raise ValueError("the database name cannot be an empty string")
        if not self.table_name:
            raise ValueError("the table name cannot be an empty string")
        if not self.additional.auth_context:
            raise ValueError(
                "the authorization context was an empty string, which is not allowed"
            )
        if not self.blob_path:
            raise ValueError("the BlobPath was not set")

    def to_base64_json(self):
        """Fill in defaults, validate and return the properties as base64-encoded JSON."""
        props = self._with_defaults()
        props._validate()
        text = json.dumps(props.to_dict(), separators=(",", ":"), ensure_ascii=False)
        return base64.b64encode(text.encode("utf-8")).decode("ascii")


@dataclass
class SourceOptions:
    """What the caller says about the source being uploaded."""

    id: uuid.UUID = NIL_UUID
    delete_local_source: bool = False
    dont_compress: bool = False
    original_source: str = ""
    compression_type: CompressionType = CompressionType.UNKNOWN


@dataclass
class StreamingProps:
    """Options used when ingesting by streaming."""

    client_request_id: str = ""


@dataclass
class ManagedStreamingProps:
    """Exponential backoff settings for retrying transient streaming failures."""

    initial_interval: float = 1.0
    multiplier: float = 2.0
    max_interval: float = 60.0
    randomization_factor: float = 0.5

    def intervals(self, retries):
        """Yield the delays, in seconds, to wait before each of the given number of retries."""
        current = self.initial_interval
        for _ in range(retries):
            delta = self.randomization_factor * current
            yield random.uniform(current - delta, current + delta)
            current = min(current * self.multiplier, self.max_interval)


@dataclass
class AllProperties:
    """The full set of properties that an ingestion may use."""

    ingestion: IngestionProps = field(default_factory=IngestionProps)
    source: SourceOptions = field(default_factory=SourceOptions)
    streaming: StreamingProps = field(default_factory=StreamingProps)
    managed_streaming: ManagedStreamingProps = field(default_factory=ManagedStreamingProps)

    def apply_delete_local_source(self):
        """Delete the local source file when the caller asked for it."""
        if self.source.delete_local_source and self.source.original_source:
            try:
                os.remove(self.source.original_source)
            except OSError as exc:
                raise KustoError(
                    Op.FILE_INGEST,
                    Kind.LOCAL_FILE_SYSTEM,
                    "file was uploaded successfully, but we could not delete the local file: "
                    f"{exc}",
                ).set_no_retry() from exc


def remove_query_params_from_url(url):
    """Cut a URL at its query string and at any ';'-appended secret."""
    return url.split("?", 1)[0].split(";", 1)[0]