"""Tracking the outcome of an ingestion through the service's status table."""

from __future__ import annotations

import random
import threading

from .properties import IngestionReportMethod
from .status import FailureStatusCode, StatusCode, StatusRecord

_NOT_A_RESULT = "Error is not an Ingestion Result"


class IngestionResult:
    """The status of one ingestion, optionally followed through the status table.

    A status table client must offer ``read(source_id)`` returning a mapping and
    ``write(source_id, data)``.
    """

    poll_interval = 10.0
    retry_delays = (120, 60, 10)
    retry_jitter = 5

    def __init__(self):
        self.record = StatusRecord()
        self.table_client = None
        self.report_to_table = False

    def put_props(self, props):
        """Fill the record from ingestion properties and note whether status goes to a table."""
        self.report_to_table = props.ingestion.report_method in (
            IngestionReportMethod.TABLE,
            IngestionReportMethod.QUEUE_AND_TABLE,
        )
        self.record.from_props(props)

    def _retrieval_failed(self, details):
        self.record.status = StatusCode.STATUS_RETRIEVAL_FAILED
        self.record.failure_status = FailureStatusCode.PERMANENT
        self.record.details = details

    def put_queued(self, manager, table_client_factory):
        """Set the status after queuing; write the initial table entry when tracking status."""
        if not self.report_to_table:
            self.record.status = StatusCode.QUEUED
            return

        try:
            tables = manager.get_tables()
        except Exception as exc:
            self._retrieval_failed(f"Failed getting status table URI: {exc}")
            return

        if not tables:
            self._retrieval_failed("Ingestion resources do not include a status table URI")
            return

        try:
            client = table_client_factory(tables[0])
        except Exception as exc:
            self._retrieval_failed(f"Failed Creating a Status Table client: {exc}")
            return

        self.record.status = StatusCode.PENDING
        try:
            client.write(str(self.record.ingestion_source_id), self.record.to_map())
        except Exception as exc:
            self._retrieval_failed(f"Failed writing initial status record: {exc}")
            return

        self.table_client = client

    def wait(self, cancel=None):
        """Block until the ingestion reaches a final status.

        Returns None right away when the status is already final or is not tracked.
        Raises the status record when tracking ends without success. ``cancel`` is an
        optional threading.Event that stops the polling.
        """
        if self.record.status.is_final() or not self.report_to_table:
            return None

        self._poll(cancel if cancel is not None else threading.Event())
        if not self.record.status.is_success():
            raise self.record
        return None

    def _poll(self, cancel):
        if self.table_client is None:
            return

        attempts = len(self.retry_delays)
        source_id = str(self.record.ingestion_source_id)
        while True:
            if cancel.wait(self.poll_interval):
                self.record.status = StatusCode.STATUS_RETRIEVAL_CANCELED
                self.record.failure_status = FailureStatusCode.TRANSIENT
                return

            try:
                data = self.table_client.read(source_id)
            except Exception as exc:
                if attempts == 0:
                    self.record.status = StatusCode.STATUS_RETRIEVAL_FAILED
                    self.record.failure_status = FailureStatusCode.TRANSIENT
                    self.record.details = f"Failed reading from Status Table: {exc}"
                    return
                attempts -= 1
                jitter = random.randrange(self.retry_jitter) if self.retry_jitter > 0 else 0
                cancel.wait(self.retry_delays[attempts] + jitter)
                continue

            self.record.from_map(data)
            if self.record.status.is_final():
                return


def is_status_record(err):
    """True when the error is an ingestion status record."""
    return isinstance(err, StatusRecord)


def _require_record(err):
    if not isinstance(err, StatusRecord):
        raise ValueError(_NOT_A_RESULT)
    return err


def get_ingestion_status(err):
    """The status code of an ingestion error; ValueError for other errors."""
    return _require_record(err).status


def get_ingestion_failure_status(err):
    """The failure status of an ingestion error; ValueError for other errors."""
    return _require_record(err).failure_status


def get_error_code(err):
    """The service error code of an ingestion error; ValueError for other errors."""
    return _require_record(err).error_code


def is_retryable(err):
    """True when the error is an ingestion status whose failure may pass on retry."""
    return isinstance(err, StatusRecord) and err.failure_status.is_retryable()