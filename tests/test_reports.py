"""
Tests for report submission, polling and parsing.
"""

import gzip

import httpx
import pytest

from spapi_order_sync.client import REPORT_DOCUMENTS_PATH, REPORTS_PATH
from spapi_order_sync.exceptions import (
    ApiError,
    InvalidReportData,
    ReportFailed,
    ReportTimeout,
)
from spapi_order_sync.models import ReportStatus
from spapi_order_sync.reports import (
    ReportJobPoller,
    decode_report_body,
    parse_report_rows,
)

REPORT_TYPE = "GET_FLAT_FILE_ALL_ORDERS_DATA_BY_LAST_UPDATE_GENERAL"
REPORT_ID = "50038019283"
DOCUMENT_ID = "amzn1.tortuga.3.920614b0-fc4c-4393-b0d9-fff175300000"
DOCUMENT_URL = "https://tortuga-prod-na.s3.amazonaws.com/report-doc.txt"


class RecordingStateSink:
    def __init__(self):
        self.transitions = []

    def persist_report_state(self, transition):
        self.transitions.append(transition)


def status(processing_status, document_id=None):
    body = {"reportId": REPORT_ID, "reportType": REPORT_TYPE, "processingStatus": processing_status}
    if document_id:
        body["reportDocumentId"] = document_id
    return httpx.Response(200, json=body)


@pytest.fixture
def state_sink():
    return RecordingStateSink()


@pytest.fixture
def poller(client, state_sink):
    return ReportJobPoller(client, state_sink)


@pytest.fixture
def report_routes(transport):
    """Route createReport; tests add status, document and download routes."""
    transport.add("POST", REPORTS_PATH, httpx.Response(202, json={"reportId": REPORT_ID}))
    return transport


def add_document(transport, body: bytes, compression=None, url=DOCUMENT_URL):
    info = {"reportDocumentId": DOCUMENT_ID}
    if url:
        info["url"] = url
    if compression:
        info["compressionAlgorithm"] = compression
    transport.add("GET", f"{REPORT_DOCUMENTS_PATH}/{DOCUMENT_ID}", httpx.Response(200, json=info))
    transport.add("GET", "/report-doc.txt", httpx.Response(200, content=body))


class TestParseReportRows:
    """Tests for tab-delimited report parsing."""

    def test_skips_blank_lines(self, sample_report_tsv):
        """Test header plus four lines with one blank gives three records."""
        headers, rows = parse_report_rows(sample_report_tsv)

        assert headers == ["amazon-order-id", "merchant-order-id", "purchase-date", "order-status", "sku"]
        assert len(rows) == 3
        assert rows[0]["amazon-order-id"] == "111-0000001-0000001"
        assert rows[1]["order-status"] == "Pending"
        assert rows[2]["sku"] == "SKU-3"

    def test_empty_cells_kept(self, sample_report_tsv):
        _, rows = parse_report_rows(sample_report_tsv)
        assert rows[0]["merchant-order-id"] == ""

    def test_missing_trailing_cells(self):
        _, rows = parse_report_rows("a\tb\tc\n1\n")
        assert rows == [{"a": "1", "b": "", "c": ""}]

    def test_crlf(self):
        _, rows = parse_report_rows("a\tb\r\n1\t2\r\n")
        assert rows == [{"a": "1", "b": "2"}]

    @pytest.mark.parametrize("text", ["", "\n\n", "a\tb\n", "a\tb\n\n  \n"])
    def test_header_only_rejected(self, text):
        with pytest.raises(InvalidReportData):
            parse_report_rows(text)


class TestDecodeReportBody:
    """Tests for report body decoding."""

    def test_plain(self):
        assert decode_report_body("a\tb\n".encode()) == "a\tb\n"

    def test_strips_bom(self):
        assert decode_report_body(b"\xef\xbb\xbfa\tb\n") == "a\tb\n"

    def test_gzip(self):
        assert decode_report_body(gzip.compress(b"a\tb\n1\t2\n"), "GZIP") == "a\tb\n1\t2\n"

    def test_invalid_gzip(self):
        with pytest.raises(InvalidReportData):
            decode_report_body(b"not gzip", "GZIP")

    def test_unsupported_compression(self):
        with pytest.raises(InvalidReportData):
            decode_report_body(b"data", "ZSTD")


class TestReportJobPoller:
    """Tests for ReportJobPoller."""

    def test_done_after_polling(self, poller, report_routes, sleeps, state_sink, sample_report_tsv):
        """Test IN_PROGRESS, IN_PROGRESS, DONE downloads and parses three records."""
        report_routes.add(
            "GET",
            f"{REPORTS_PATH}/{REPORT_ID}",
            status("IN_PROGRESS"),
            status("IN_PROGRESS"),
            status("DONE", DOCUMENT_ID),
        )
        add_document(report_routes, sample_report_tsv.encode())

        document = poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"], "2025-05-01T00:00:00Z")

        assert document.report_id == REPORT_ID
        assert document.document_id == DOCUMENT_ID
        assert len(document.records) == 3
        assert len(report_routes.requests_to("GET", f"{REPORTS_PATH}/{REPORT_ID}")) == 3
        assert sleeps == [5.0, 5.0, 5.0]

        statuses = [t.status for t in state_sink.transitions]
        assert statuses == [ReportStatus.SUBMITTED, ReportStatus.IN_PROGRESS, ReportStatus.DONE]
        assert state_sink.transitions[-1].report_document_id == DOCUMENT_ID
        assert state_sink.transitions[-1].previous is ReportStatus.IN_PROGRESS

    def test_transitions_only_on_change(self, poller, report_routes, state_sink, sample_report_tsv):
        report_routes.add(
            "GET",
            f"{REPORTS_PATH}/{REPORT_ID}",
            status("IN_QUEUE"),
            status("IN_QUEUE"),
            status("IN_PROGRESS"),
            status("DONE", DOCUMENT_ID),
        )
        add_document(report_routes, sample_report_tsv.encode())

        poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

        assert [(t.status.value, t.attempt) for t in state_sink.transitions] == [
            ("SUBMITTED", 0),
            ("IN_QUEUE", 1),
            ("IN_PROGRESS", 3),
            ("DONE", 4),
        ]

    def test_timeout_after_twelve_polls(self, poller, report_routes, sleeps, state_sink):
        """Test a job stuck IN_PROGRESS gives up after exactly 12 polls."""
        report_routes.add("GET", f"{REPORTS_PATH}/{REPORT_ID}", status("IN_PROGRESS"))

        with pytest.raises(ReportTimeout) as exc_info:
            poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

        assert len(report_routes.requests_to("GET", f"{REPORTS_PATH}/{REPORT_ID}")) == 12
        assert sleeps == [5.0] * 12
        assert exc_info.value.attempts == 12
        assert exc_info.value.last_status == "IN_PROGRESS"
        assert state_sink.transitions[-1].status is ReportStatus.TIMED_OUT

    @pytest.mark.parametrize("terminal", ["FATAL", "CANCELLED"])
    def test_failed_report(self, poller, report_routes, state_sink, terminal):
        report_routes.add(
            "GET",
            f"{REPORTS_PATH}/{REPORT_ID}",
            status("IN_PROGRESS"),
            status(terminal),
        )

        with pytest.raises(ReportFailed) as exc_info:
            poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

        assert exc_info.value.status == terminal
        assert exc_info.value.report_id == REPORT_ID
        assert len(report_routes.requests_to("GET", f"{REPORTS_PATH}/{REPORT_ID}")) == 2
        assert state_sink.transitions[-1].status.value == terminal

    def test_done_without_document_id(self, poller, report_routes):
        report_routes.add("GET", f"{REPORTS_PATH}/{REPORT_ID}", status("DONE"))

        with pytest.raises(InvalidReportData):
            poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

    def test_document_without_url(self, poller, report_routes):
        """Test a document with no url fails without attempting a download."""
        report_routes.add("GET", f"{REPORTS_PATH}/{REPORT_ID}", status("DONE", DOCUMENT_ID))
        add_document(report_routes, b"", url=None)

        with pytest.raises(InvalidReportData):
            poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

        assert report_routes.requests_to("GET", "/report-doc.txt") == []

    def test_header_only_document(self, poller, report_routes):
        report_routes.add("GET", f"{REPORTS_PATH}/{REPORT_ID}", status("DONE", DOCUMENT_ID))
        add_document(report_routes, b"amazon-order-id\tsku\n")

        with pytest.raises(InvalidReportData):
            poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

    def test_gzip_document(self, poller, report_routes, sample_report_tsv):
        report_routes.add("GET", f"{REPORTS_PATH}/{REPORT_ID}", status("DONE", DOCUMENT_ID))
        add_document(report_routes, gzip.compress(sample_report_tsv.encode()), compression="GZIP")

        document = poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

        assert document.compression_algorithm == "GZIP"
        assert len(document.records) == 3

    def test_create_failure(self, client, state_sink, transport):
        transport.add("POST", REPORTS_PATH, httpx.Response(400, json={"errors": []}))
        poller = ReportJobPoller(client, state_sink)

        with pytest.raises(ApiError):
            poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])
        assert state_sink.transitions == []

    def test_sink_failure_does_not_stop_polling(self, client, report_routes, sample_report_tsv):
        class BrokenSink:
            def persist_report_state(self, transition):
                raise OSError("disk full")

        report_routes.add("GET", f"{REPORTS_PATH}/{REPORT_ID}", status("DONE", DOCUMENT_ID))
        add_document(report_routes, sample_report_tsv.encode())
        poller = ReportJobPoller(client, BrokenSink())

        document = poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

        assert len(document.records) == 3

    def test_custom_ceiling(self, client, state_sink, report_routes, sleeps):
        report_routes.add("GET", f"{REPORTS_PATH}/{REPORT_ID}", status("IN_QUEUE"))
        poller = ReportJobPoller(client, state_sink, max_attempts=3, poll_interval=0.5)

        with pytest.raises(ReportTimeout):
            poller.submit_and_await(REPORT_TYPE, ["ATVPDKIKX0DER"])

        assert sleeps == [0.5, 0.5, 0.5]

    def test_invalid_ceiling(self, client, state_sink):
        with pytest.raises(ValueError):
            ReportJobPoller(client, state_sink, max_attempts=0)
