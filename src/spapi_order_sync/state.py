"""
Sinks for synced data and report state.

The sync core only talks to the RecordSink and ReportStateSink protocols.
The file-backed implementations here are what the CLI uses by default:
report state in a JSON file (so an interrupted poll leaves its last known
status behind) and records as JSON lines.
"""

import json
import threading
from pathlib import Path
from typing import Any, Protocol

import structlog

from spapi_order_sync.records import OrderRecord
from spapi_order_sync.reports import ReportTransition

logger = structlog.get_logger(__name__)

DEFAULT_STATE_DIR = Path.home() / ".spapi-order-sync"


class RecordSink(Protocol):
    """Destination for synced records."""

    def persist_marketplaces(self, batch: list[dict[str, Any]]) -> None:
        ...

    def persist_orders(self, batch: list[OrderRecord]) -> None:
        ...

    def persist_report_rows(self, report_id: str, rows: list[dict[str, str]]) -> None:
        ...


class ReportStateStore:
    """
    Persists the last known transition of each report job.

    Usage:
        store = ReportStateStore("/path/to/reports.json")
        poller = ReportJobPoller(client, store)

        store.get("50038019283")  # {"status": "IN_PROGRESS", ...}
    """

    def __init__(self, state_file: str | Path | None = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state file. If None, uses default location.
        """
        if state_file is None:
            # Default: ~/.spapi-order-sync/reports.json
            DEFAULT_STATE_DIR.mkdir(exist_ok=True)
            state_file = DEFAULT_STATE_DIR / "reports.json"

        self.state_file = Path(state_file)
        self._lock = threading.Lock()
        self._log = logger.bind(state_file=str(self.state_file))

    def load(self) -> dict[str, dict[str, Any]]:
        """Load all report states, or an empty mapping if none exist."""
        if not self.state_file.exists():
            return {}

        try:
            with open(self.state_file, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            self._log.warning("Failed to load report state, starting fresh", error=str(e))
            return {}

        if not isinstance(data, dict):
            self._log.warning("Report state file is not a JSON object, ignoring it")
            return {}
        return data

    def get(self, report_id: str) -> dict[str, Any] | None:
        return self.load().get(report_id)

    def persist_report_state(self, transition: ReportTransition) -> None:
        """
        Record a transition.

        Uses atomic write (write to temp, then rename) to prevent corruption.
        """
        with self._lock:
            states = self.load()
            states[transition.report_id] = transition.to_dict()

            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            temp_file = self.state_file.with_suffix(".tmp")
            with open(temp_file, "w") as f:
                json.dump(states, f, indent=2)
            temp_file.replace(self.state_file)

        self._log.debug(
            "Saved report state",
            report_id=transition.report_id,
            status=transition.status.value,
        )

    def clear(self) -> None:
        """Delete state file (for testing or reset)."""
        if self.state_file.exists():
            self.state_file.unlink()
            self._log.info("Cleared report state file")


class JsonLinesSink:
    """
    Appends records as JSON lines, one file per entity type.

    Files: marketplaces.jsonl, orders.jsonl, report_rows.jsonl
    """

    def __init__(self, output_dir: str | Path):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.counts = {"marketplaces": 0, "orders": 0, "report_rows": 0}
        self._log = logger.bind(output_dir=str(self.output_dir))

    def _append(self, name: str, rows: list[dict[str, Any]]) -> None:
        path = self.output_dir / f"{name}.jsonl"
        with open(path, "a", encoding="utf-8") as f:
            for row in rows:
                f.write(json.dumps(row, default=str, ensure_ascii=False))
                f.write("\n")
        self.counts[name] += len(rows)
        self._log.info("Persisted batch", entity=name, count=len(rows))

    def persist_marketplaces(self, batch: list[dict[str, Any]]) -> None:
        self._append("marketplaces", batch)

    def persist_orders(self, batch: list[OrderRecord]) -> None:
        self._append("orders", [record.to_dict() for record in batch])

    def persist_report_rows(self, report_id: str, rows: list[dict[str, str]]) -> None:
        self._append(
            "report_rows",
            [{"report_id": report_id, "index": i, "record": row} for i, row in enumerate(rows)],
        )


class NullSink:
    """Discards everything. Used for dry runs."""

    def persist_marketplaces(self, batch: list[dict[str, Any]]) -> None:
        pass

    def persist_orders(self, batch: list[OrderRecord]) -> None:
        pass

    def persist_report_rows(self, report_id: str, rows: list[dict[str, str]]) -> None:
        pass

    def persist_report_state(self, transition: ReportTransition) -> None:
        pass
