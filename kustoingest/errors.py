"""Error types raised by the ingestion client."""

from __future__ import annotations

import enum


class Op(enum.Enum):
    """The operation that was running when an error happened."""

    UNKNOWN = "unknown"
    MGMT = "mgmt"
    QUERY = "query"
    INGEST_STREAM = "ingest_stream"
    FILE_INGEST = "file_ingest"


class Kind(enum.Enum):
    """The broad category of an error."""

    OTHER = "other"
    HTTP_ERROR = "http_error"
    CLIENT_ARGS = "client_args"
    BLOBSTORE = "blobstore"
    LOCAL_FILE_SYSTEM = "local_file_system"
    INTERNAL = "internal"
    TIMEOUT = "timeout"


# Kinds that describe a mistake on the caller's side; retrying them cannot help.
_PERMANENT_KINDS = frozenset({Kind.CLIENT_ARGS, Kind.LOCAL_FILE_SYSTEM, Kind.INTERNAL})


class KustoError(Exception):
    """An error carrying the failed operation, its kind and whether a retry may help."""

    def __init__(self, op, kind, message, retryable=None):
        self.op = Op(op)
        self.kind = Kind(kind)
        self.message = str(message)
        if retryable is None:
            retryable = self.kind not in _PERMANENT_KINDS
        self.retryable = bool(retryable)
        super().__init__(self.message)

    def set_no_retry(self):
        """Mark the error as permanent and return it."""
        self.retryable = False
        return self

    def __str__(self):
        return f"Op({self.op.value}): Kind({self.kind.value}): {self.message}"

    def __repr__(self):
        return (
            f"{type(self).__name__}(op={self.op!r}, kind={self.kind!r}, "
            f"message={self.message!r}, retryable={self.retryable!r})"
        )

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return (self.op, self.kind, self.message, self.retryable) == (
            other.op,
            other.kind,
            other.message,
            other.retryable,
        )

    def __hash__(self):
        return hash((type(self), self.op, self.kind, self.message, self.retryable))


class HttpError(KustoError):
    """An error returned by the service over HTTP."""

    def __init__(self, status_code, message):
        self.status_code = int(status_code)
        super().__init__(Op.UNKNOWN, Kind.HTTP_ERROR, message, retryable=self.status_code == 429)

    def is_throttled(self):
        """True when the service asked the client to slow down."""
        return self.status_code == 429

    def __eq__(self, other):
        if type(other) is not type(self):
            return NotImplemented
        return self.status_code == other.status_code and super().__eq__(other)

    def __hash__(self):
        return hash((super().__hash__(), self.status_code))


def is_retryable(err):
    """Tell whether an error is one that may succeed when tried again."""
    if isinstance(err, KustoError):
        return err.retryable
    return False