"""Ingestion status codes and the status record kept for each ingestion."""

from __future__ import annotations

import datetime as _dt
import re
import uuid
from dataclasses import dataclass, field, fields

from .properties import remove_query_params_from_url

NIL_UUID = uuid.UUID(int=0)
UNDEFINED = "Undefined"
UNKNOWN = "Unknown"


class StatusCode(str):
    """The status of an ingestion, as reported by the service or the client."""

    __slots__ = ()

    def is_final(self):
        """True unless the status is still Pending."""
        return self != "Pending"

    def is_success(self):
        """True for the final successful statuses, Succeeded and Queued."""
        return self in ("Succeeded", "Queued")

    def __repr__(self):
        return f"StatusCode({str.__repr__(self)})"


StatusCode.PENDING = StatusCode("Pending")
StatusCode.SUCCEEDED = StatusCode("Succeeded")
StatusCode.FAILED = StatusCode("Failed")
StatusCode.QUEUED = StatusCode("Queued")
StatusCode.SKIPPED = StatusCode("Skipped")
StatusCode.PARTIALLY_SUCCEEDED = StatusCode("PartiallySucceeded")
StatusCode.STATUS_RETRIEVAL_FAILED = StatusCode("StatusRetrievalFailed")
StatusCode.STATUS_RETRIEVAL_CANCELED = StatusCode("StatusRetrievalCanceled")


class FailureStatusCode(str):
    """The kind of failure of an ingestion attempt."""

    __slots__ = ()

    def is_retryable(self):
        """True when retrying the ingestion may help."""
        return self in ("Transient", "Exhausted")

    def __repr__(self):
        return f"FailureStatusCode({str.__repr__(self)})"


FailureStatusCode.UNKNOWN = FailureStatusCode("Unknown")
FailureStatusCode.PERMANENT = FailureStatusCode("Permanent")
FailureStatusCode.TRANSIENT = FailureStatusCode("Transient")
FailureStatusCode.EXHAUSTED = FailureStatusCode("Exhausted")


_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:\d{2})\Z"
)


def _parse_rfc3339(text):
    match = _RFC3339.match(text)
    if match is None:
        raise ValueError(f"not an RFC 3339 timestamp: {text!r}")
    year, month, day, hour, minute, second, frac, zone = match.groups()
    micro = int(frac[:6].ljust(6, "0")) if frac else 0
    if zone.upper() == "Z":
        tz = _dt.timezone.utc
    else:
        sign = -1 if zone[0] == "-" else 1
        offset = _dt.timedelta(hours=int(zone[1:3]), minutes=int(zone[4:6]))
        tz = _dt.timezone(sign * offset)
    return _dt.datetime(
        int(year), int(month), int(day), int(hour), int(minute), int(second), micro, tz
    )


def _format_rfc3339(value):
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += "." + f"{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset() or _dt.timedelta(0)
    if offset == _dt.timedelta(0):
        return text + "Z"
    sign = "+" if offset > _dt.timedelta(0) else "-"
    minutes = abs(int(offset.total_seconds())) // 60
    return f"{text}{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _time_from(value):
    if isinstance(value, _dt.datetime):
        return value
    if isinstance(value, str):
        return _parse_rfc3339(value)
    raise TypeError(f"unexpected time format {type(value).__name__}")


def _uuid_from(data, key):
    value = data.get(key)
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value)
        except ValueError:
            return NIL_UUID
    return NIL_UUID


def _string_from(data, key):
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _now():
    return _dt.datetime.now(_dt.timezone.utc)


@dataclass
class StatusRecord(Exception):
    """The status of one ingestion; raised as an error when an ingestion did not succeed."""

    status: StatusCode = StatusCode.FAILED
    ingestion_source_id: uuid.UUID = NIL_UUID
    ingestion_source_path: str = UNDEFINED
    database: str = UNDEFINED
    table: str = UNDEFINED
    updated_on: _dt.datetime = field(default_factory=_now)
    operation_id: uuid.UUID = NIL_UUID
    activity_id: uuid.UUID = NIL_UUID
    error_code: str = UNKNOWN
    failure_status: FailureStatusCode = FailureStatusCode.UNKNOWN
    details: str = ""
    originates_from_update_policy: bool = False

    def from_props(self, props):
        """Take the source id, database, table and blob path from ingestion properties."""
        self.ingestion_source_id = props.source.id
        self.database = props.ingestion.database_name
        self.table = props.ingestion.table_name
        self.updated_on = _now()
        if props.ingestion.blob_path and self.ingestion_source_path == UNDEFINED:
            self.ingestion_source_path = remove_query_params_from_url(props.ingestion.blob_path)

    def from_map(self, data):
        """Update the record from a status table entry."""
        status = _string_from(data, "Status")
        if status:
            self.status = StatusCode(status)
        failure = _string_from(data, "FailureStatus")
        if failure:
            self.failure_status = FailureStatusCode(failure)

        self.ingestion_source_path = remove_query_params_from_url(
            _string_from(data, "IngestionSourcePath")
        )
        self.database = _string_from(data, "Database")
        self.table = _string_from(data, "Table")
        self.error_code = _string_from(data, "ErrorCode")
        self.details = _string_from(data, "Details")

        self.ingestion_source_id = _uuid_from(data, "IngestionSourceId")
        self.operation_id = _uuid_from(data, "OperationId")
        self.activity_id = _uuid_from(data, "ActivityId")

        if data.get("UpdatedOn") is not None:
            try:
                self.updated_on = _time_from(data["UpdatedOn"])
            except (TypeError, ValueError):
                pass

        policy = data.get("OriginatesFromUpdatePolicy")
        if isinstance(policy, bool):
            self.originates_from_update_policy = policy

    def to_map(self):
        """The fields of the initial status table entry written by the client."""
        return {
            "Status": str(self.status),
            "IngestionSourceId": str(self.ingestion_source_id),
            "IngestionSourcePath": remove_query_params_from_url(self.ingestion_source_path),
            "Database": self.database,
            "Table": self.table,
            "UpdatedOn": _format_rfc3339(self.updated_on),
        }

    def _pretty(self):
        lines = [f"{f.name}: {getattr(self, f.name)}" for f in fields(self)]
        return "{" + ",\n ".join(lines) + "}"

    def __str__(self):
        if self.status == "Succeeded":
            head = "Ingestion succeeded"
        elif self.status == "Queued":
            head = "Ingestion Queued"
        elif self.status == "PartiallySucceeded":
            head = "Ingestion succeeded partially"
        else:
            head = "Ingestion Failed"
        return f"{head}\n{self._pretty()}"


def status_from_map(data):
    """Build a status record from a status table entry."""
    record = StatusRecord()
    record.from_map(data)
    return record