"""
Asynchronous report jobs: submit, poll to a terminal status, download.

Report rows are tab-delimited text: a header line followed by data lines.
Every status transition is handed to a ReportStateSink so an interrupted
run leaves the last known status behind.
"""

import gzip
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol

import structlog

from spapi_order_sync.client import SPAPIClient
from spapi_order_sync.exceptions import (
    InvalidReportData,
    ReportFailed,
    ReportTimeout,
)
from spapi_order_sync.models import ReportStatus
from spapi_order_sync.pacing import Pacer

logger = structlog.get_logger(__name__)

COLUMN_SEPARATOR = "\t"
_LINE_SPLIT = re.compile(r"\r?\n")


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------

@dataclass
class ReportTransition:
    """A report job moving from one status to another."""
    report_id: str
    report_type: str
    previous: ReportStatus | None
    status: ReportStatus
    attempt: int
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    report_document_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "report_id": self.report_id,
            "report_type": self.report_type,
            "previous": self.previous.value if self.previous else None,
            "status": self.status.value,
            "attempt": self.attempt,
            "at": self.at.isoformat(),
            "report_document_id": self.report_document_id,
        }


class ReportStateSink(Protocol):
    """Receives every report state transition."""

    def persist_report_state(self, transition: ReportTransition) -> None:
        ...


@dataclass
class ReportJob:
    """Server-side report job as tracked by the poller."""
    report_id: str
    report_type: str
    marketplace_ids: list[str]
    data_start_time: str | None = None
    data_end_time: str | None = None
    status: ReportStatus = ReportStatus.SUBMITTED
    attempts: int = 0
    report_document_id: str | None = None


@dataclass
class ReportDocument:
    """A downloaded and parsed report."""
    document_id: str
    url: str
    compression_algorithm: str | None = None
    report_id: str | None = None
    headers: list[str] = field(default_factory=list)
    records: list[dict[str, str]] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def decode_report_body(body: bytes, compression_algorithm: str | None = None) -> str:
    """Decompress (GZIP) and decode a report body, stripping any BOM."""
    if compression_algorithm and compression_algorithm.upper() == "GZIP":
        try:
            body = gzip.decompress(body)
        except (OSError, EOFError) as e:
            raise InvalidReportData(f"Report body is not valid GZIP: {e}") from e
    elif compression_algorithm:
        raise InvalidReportData(f"Unsupported compression algorithm: {compression_algorithm}")

    return body.decode("utf-8-sig", errors="replace")


def parse_report_rows(text: str) -> tuple[list[str], list[dict[str, str]]]:
    """
    Parse tab-delimited report text into (headers, rows).

    Blank lines are skipped. Missing trailing cells become "". Requires a
    header line and at least one data line.
    """
    lines = [line for line in _LINE_SPLIT.split(text) if line.strip()]
    if len(lines) < 2:
        raise InvalidReportData(
            f"Report needs a header and at least one data line, got {len(lines)} line(s)"
        )

    headers = lines[0].split(COLUMN_SEPARATOR)
    rows: list[dict[str, str]] = []
    for line in lines[1:]:
        values = line.split(COLUMN_SEPARATOR)
        rows.append({
            header: values[index] if index < len(values) else ""
            for index, header in enumerate(headers)
        })
    return headers, rows


# ---------------------------------------------------------------------------
# Poller
# ---------------------------------------------------------------------------

class ReportJobPoller:
    """
    Drives a report job through its state machine.

        SUBMITTED -> IN_QUEUE | IN_PROGRESS  (self-loop while polling)
                  -> DONE | FATAL | CANCELLED
                  -> TIMED_OUT after max_attempts polls

    Example:
        poller = ReportJobPoller(client, state_store)
        document = poller.submit_and_await(
            "GET_FLAT_FILE_ALL_ORDERS_DATA_BY_LAST_UPDATE_GENERAL",
            ["ATVPDKIKX0DER"],
        )
        print(len(document.records))
    """

    def __init__(
        self,
        client: SPAPIClient,
        state_sink: ReportStateSink,
        pacer: Pacer | None = None,
        max_attempts: int = 12,
        poll_interval: float = 5.0,
    ):
        """
        Initialize poller.

        Args:
            client: API client for submit/poll/document calls
            state_sink: Observer notified of every status transition
            pacer: Sleeper for the poll interval (defaults to the client's)
            max_attempts: Polls before giving up with ReportTimeout
            poll_interval: Seconds between polls
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        self.client = client
        self.state_sink = state_sink
        self.pacer = pacer or client.pacer
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval

    def submit_and_await(
        self,
        report_type: str,
        marketplace_ids: list[str],
        data_start_time: str | None = None,
        data_end_time: str | None = None,
    ) -> ReportDocument:
        """
        Submit a report, wait for it to finish and return its parsed rows.

        Raises:
            ReportFailed: Job ended FATAL or CANCELLED
            ReportTimeout: No terminal status after max_attempts polls
            InvalidReportData: DONE without document, document without url,
                               or a body without data lines
            ApiError: Any API call failed
        """
        created = self.client.create_report(
            report_type, marketplace_ids, data_start_time, data_end_time
        )
        job = ReportJob(
            report_id=created.report_id,
            report_type=report_type,
            marketplace_ids=list(marketplace_ids),
            data_start_time=data_start_time,
            data_end_time=data_end_time,
        )
        log = logger.bind(report_id=job.report_id, report_type=report_type)
        log.info("Submitted report", marketplaces=len(marketplace_ids))
        self._notify(job, None)

        self._await_terminal(job, log)

        if job.status.is_failure:
            raise ReportFailed(job.report_id, job.status.value)

        if not job.report_document_id:
            raise InvalidReportData(f"Report {job.report_id} is DONE but has no document id")

        return self.fetch_document(job.report_document_id, report_id=job.report_id)

    def _await_terminal(self, job: ReportJob, log: Any) -> None:
        """Poll until a terminal status; raises ReportTimeout at the ceiling."""
        for attempt in range(1, self.max_attempts + 1):
            self.pacer.sleep(self.poll_interval)

            report = self.client.get_report(job.report_id)
            job.attempts = attempt
            log.info("Report status", status=report.processing_status.value, attempt=attempt)

            if report.processing_status is not job.status:
                previous = job.status
                job.status = report.processing_status
                job.report_document_id = report.report_document_id
                self._notify(job, previous)

            if job.status.is_terminal:
                return

        previous = job.status
        job.status = ReportStatus.TIMED_OUT
        self._notify(job, previous)
        log.error("Report timed out", attempts=self.max_attempts, last_status=previous.value)
        raise ReportTimeout(job.report_id, self.max_attempts, previous.value)

    def fetch_document(self, document_id: str, report_id: str | None = None) -> ReportDocument:
        """Resolve a document id to its URL, download and parse it."""
        info = self.client.get_report_document(document_id)
        if not info.url:
            raise InvalidReportData(f"Report document {document_id} has no download url")

        body = self.client.download(info.url)
        text = decode_report_body(body, info.compression_algorithm)
        headers, records = parse_report_rows(text)

        logger.info(
            "Parsed report document",
            document_id=document_id,
            report_id=report_id,
            columns=len(headers),
            records=len(records),
        )
        return ReportDocument(
            document_id=document_id,
            url=info.url,
            compression_algorithm=info.compression_algorithm,
            report_id=report_id,
            headers=headers,
            records=records,
        )

    def _notify(self, job: ReportJob, previous: ReportStatus | None) -> None:
        transition = ReportTransition(
            report_id=job.report_id,
            report_type=job.report_type,
            previous=previous,
            status=job.status,
            attempt=job.attempts,
            report_document_id=job.report_document_id,
        )
        try:
            self.state_sink.persist_report_state(transition)
        except Exception as e:
            # Sink failures never interrupt polling
            logger.warning(
                "Failed to persist report state",
                report_id=job.report_id,
                status=job.status.value,
                error=str(e),
            )
