"""
Order sync pipeline.

Runs the stages strictly in sequence, matching the provider's per-credential
rate limits: marketplaces -> report -> orders -> order details and items.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import structlog

from spapi_order_sync.auth import TokenManager
from spapi_order_sync.client import ORDERS_PATH, SPAPIClient
from spapi_order_sync.config import SyncConfig
from spapi_order_sync.exceptions import (
    AuthError,
    SPAPIError,
    SyncAborted,
    SyncCancelled,
)
from spapi_order_sync.models import Order, OrderItem
from spapi_order_sync.pacing import Pacer
from spapi_order_sync.paginator import Paginator
from spapi_order_sync.partitions import MultiPartitionFetcher
from spapi_order_sync.records import OrderRecord, build_marketplace_rows, build_order_record
from spapi_order_sync.reports import ReportJobPoller, ReportStateSink
from spapi_order_sync.state import RecordSink

logger = structlog.get_logger(__name__)

DEFAULT_LOOKBACK = timedelta(days=1)
MAX_ERRORS_KEPT = 100


@dataclass
class SyncSummary:
    """Outcome of one sync run."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    marketplaces: list[str] = field(default_factory=list)
    report_id: str | None = None
    report_status: str | None = None
    report_records: int = 0
    orders_fetched: int = 0
    orders_persisted: int = 0
    orders_failed: int = 0
    duplicates_skipped: int = 0
    partition_failures: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        del self.errors[:-MAX_ERRORS_KEPT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "marketplaces": self.marketplaces,
            "report_id": self.report_id,
            "report_status": self.report_status,
            "report_records": self.report_records,
            "orders_fetched": self.orders_fetched,
            "orders_persisted": self.orders_persisted,
            "orders_failed": self.orders_failed,
            "duplicates_skipped": self.duplicates_skipped,
            "partition_failures": self.partition_failures,
            "errors": self.errors,
        }


class OrderSync:
    """
    Orchestrates one sync run against the injected sinks.

    Failure isolation:
    - AuthError and cancellation always abort the run
    - Marketplace listing failure, or every marketplace failing to list
      orders, aborts with SyncAborted
    - Report stage failures are recorded; the orders stage still runs
    - A failing order is recorded and the next order is processed

    Example:
        sync = OrderSync.from_config(config, JsonLinesSink("out"), ReportStateStore())
        summary = sync.run()
    """

    def __init__(
        self,
        client: SPAPIClient,
        sink: RecordSink,
        report_state_sink: ReportStateSink,
        date_start_time: str | None = None,
        date_end_time: str | None = None,
        order_statuses: list[str] | None = None,
        report_type: str | None = None,
        batch_size: int = 50,
        partition_delay: float = 1.0,
        report_max_attempts: int = 12,
        report_poll_interval: float = 5.0,
    ):
        self.client = client
        self.sink = sink
        self.pacer = client.pacer
        self.date_start_time = date_start_time
        self.date_end_time = date_end_time
        self.order_statuses = order_statuses or []
        self.report_type = report_type
        self.batch_size = batch_size

        self.poller = ReportJobPoller(
            client,
            report_state_sink,
            pacer=self.pacer,
            max_attempts=report_max_attempts,
            poll_interval=report_poll_interval,
        )
        self.order_fetcher = MultiPartitionFetcher(
            Paginator(client, records_key="Orders", record_model=Order),
            pacer=self.pacer,
            partition_delay=partition_delay,
        )
        self.items_paginator = Paginator(client, records_key="OrderItems", record_model=OrderItem)

        self._log = logger.bind(region=client.region)

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        sink: RecordSink,
        report_state_sink: ReportStateSink,
        pacer: Pacer | None = None,
        transport: httpx.BaseTransport | None = None,
        skip_report: bool = False,
    ) -> "OrderSync":
        """Wire the token manager, client and pipeline from a SyncConfig."""
        pacer = pacer or Pacer(deadline_seconds=config.deadline_seconds)
        tokens = TokenManager(
            config.client_id,
            config.client_secret,
            config.refresh_token,
            http_client=httpx.Client(timeout=30.0, transport=transport) if transport else None,
        )
        client = SPAPIClient(
            tokens,
            region=config.region,
            max_retries=config.max_retries,
            max_wait_time=config.max_wait_time,
            pacer=pacer,
            transport=transport,
        )
        return cls(
            client,
            sink,
            report_state_sink,
            date_start_time=config.date_start_time,
            date_end_time=config.date_end_time,
            order_statuses=config.order_statuses,
            report_type=None if skip_report else config.report_type,
            batch_size=config.batch_size,
            partition_delay=config.partition_delay,
            report_max_attempts=config.report_max_attempts,
            report_poll_interval=config.report_poll_interval,
        )

    def run(self) -> SyncSummary:
        """
        Run all stages.

        Raises:
            AuthError: Credentials rejected
            SyncAborted: Marketplaces or orders could not be listed at all
            SyncCancelled: Cancelled or past the deadline
        """
        summary = SyncSummary()
        self._log.info("Starting sync", start=self.date_start_time, end=self.date_end_time)

        try:
            with self.client:
                marketplace_ids = self._sync_marketplaces(summary)
                self._sync_report(marketplace_ids, summary)
                orders = self._fetch_orders(marketplace_ids, summary)
                self._sync_orders(orders, summary)
        finally:
            self.client.token_manager.close()
            summary.finished_at = datetime.now(timezone.utc)

        self._log.info(
            "Sync complete",
            orders_persisted=summary.orders_persisted,
            orders_failed=summary.orders_failed,
            report_status=summary.report_status,
            errors=len(summary.errors),
        )
        return summary

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    def _sync_marketplaces(self, summary: SyncSummary) -> list[str]:
        try:
            participations = self.client.get_marketplace_participations()
        except (AuthError, SyncCancelled):
            raise
        except SPAPIError as e:
            self._log.error("Failed to list marketplaces", error=str(e))
            raise SyncAborted(f"Cannot list marketplaces: {e}") from e

        rows = build_marketplace_rows(participations)
        if not rows:
            raise SyncAborted("No marketplace participations found")

        self.sink.persist_marketplaces(rows)
        summary.marketplaces = [row["marketplace_id"] for row in rows]
        self._log.info("Saved marketplace participations", count=len(rows))
        return summary.marketplaces

    def _sync_report(self, marketplace_ids: list[str], summary: SyncSummary) -> None:
        if not self.report_type:
            self._log.info("No report type configured, skipping report stage")
            return

        log = self._log.bind(report_type=self.report_type)
        try:
            document = self.poller.submit_and_await(
                self.report_type,
                marketplace_ids,
                self.date_start_time,
                self.date_end_time,
            )
        except (AuthError, SyncCancelled):
            raise
        except Exception as e:
            summary.report_status = type(e).__name__
            summary.report_id = getattr(e, "report_id", None)
            summary.add_error(f"Report: {e}")
            log.error("Report stage failed, continuing with orders", error=str(e))
            return

        summary.report_id = document.report_id
        summary.report_status = "DONE"
        summary.report_records = len(document.records)

        try:
            self.sink.persist_report_rows(document.report_id or document.document_id, document.records)
        except Exception as e:
            summary.add_error(f"Report rows: {e}")
            log.error("Failed to persist report rows", error=str(e))

    def _order_params(self) -> dict[str, Any]:
        created_after = self.date_start_time
        if not created_after:
            # getOrders requires a lower bound
            created_after = (datetime.now(timezone.utc) - DEFAULT_LOOKBACK).strftime(
                "%Y-%m-%dT%H:%M:%SZ"
            )
        return {
            "CreatedAfter": created_after,
            "CreatedBefore": self.date_end_time,
            "OrderStatuses": self.order_statuses,
        }

    def _fetch_orders(self, marketplace_ids: list[str], summary: SyncSummary) -> list[Order]:
        orders = self.order_fetcher.fetch_across_partitions(
            ORDERS_PATH,
            self._order_params(),
            marketplace_ids,
        )

        for failure in self.order_fetcher.failures:
            summary.partition_failures.append(failure.to_dict())
            summary.add_error(str(failure))

        if self.order_fetcher.all_failed:
            raise SyncAborted("Orders could not be listed for any marketplace")

        summary.orders_fetched = len(orders)
        self._log.info("Total orders found across all marketplaces", count=len(orders))
        return orders

    def _sync_orders(self, orders: list[Order], summary: SyncSummary) -> None:
        batch: list[OrderRecord] = []
        seen: set[str] = set()

        for order in orders:
            order_id = order.amazon_order_id
            if order_id in seen:
                summary.duplicates_skipped += 1
                self._log.debug("Skipping duplicate order", amazon_order_id=order_id)
                continue
            seen.add(order_id)

            try:
                details = self.client.get_order(order_id)
                items = list(self.items_paginator.iter_records(self.client.order_items_path(order_id)))
                batch.append(build_order_record(order, details, items))
            except (AuthError, SyncCancelled):
                raise
            except Exception as e:
                summary.orders_failed += 1
                summary.add_error(f"Order {order_id}: {e}")
                self._log.warning("Failed to process order", amazon_order_id=order_id, error=str(e))
                continue

            if len(batch) >= self.batch_size:
                self._flush(batch, summary)
                batch = []

        if batch:
            self._flush(batch, summary)

    def _flush(self, batch: list[OrderRecord], summary: SyncSummary) -> None:
        try:
            self.sink.persist_orders(batch)
        except Exception as e:
            summary.orders_failed += len(batch)
            summary.add_error(f"Persisting {len(batch)} orders: {e}")
            self._log.error("Failed to persist order batch", count=len(batch), error=str(e))
            return

        summary.orders_persisted += len(batch)
        self._log.info("Saved order batch", count=len(batch), total=summary.orders_persisted)
