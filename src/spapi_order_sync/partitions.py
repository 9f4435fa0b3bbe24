"""
Per-marketplace fan-out for list endpoints.

getOrders misbehaves when several marketplace ids are combined into one
filter, so each marketplace is drained on its own and the results are
concatenated. One failing marketplace never dooms the others.
"""

from collections.abc import Mapping, Sequence
from typing import Any

import structlog

from spapi_order_sync.exceptions import (
    AuthError,
    PartitionFetchError,
    SyncCancelled,
)
from spapi_order_sync.pacing import Pacer
from spapi_order_sync.paginator import Paginator

logger = structlog.get_logger(__name__)

MARKETPLACE_IDS_PARAM = "MarketplaceIds"


class MultiPartitionFetcher:
    """
    Runs a Paginator once per partition and merges the records.

    Results come back in partition order, each partition's pages in page
    order. Partitions are assumed disjoint; duplicates are not removed.

    Example:
        fetcher = MultiPartitionFetcher(Paginator(client, "Orders", Order), pacer)
        orders = fetcher.fetch_across_partitions(
            "/orders/v0/orders",
            {"CreatedAfter": "2025-05-01T00:00:00Z"},
            ["ATVPDKIKX0DER", "A2EUQ1WTGCTBG2"],
        )
        for failure in fetcher.failures:
            print(failure.partition_id, failure.cause)
    """

    def __init__(
        self,
        paginator: Paginator,
        pacer: Pacer | None = None,
        partition_param: str = MARKETPLACE_IDS_PARAM,
        partition_delay: float = 1.0,
        page_limit: int | None = None,
    ):
        """
        Initialize fetcher.

        Args:
            paginator: Paginator for the target endpoint
            pacer: Sleeper for the inter-partition delay
            partition_param: Query param scoped to one partition per run
            partition_delay: Seconds to wait between partitions
            page_limit: Optional per-partition page cap
        """
        self.paginator = paginator
        self.pacer = pacer or paginator.client.pacer
        self.partition_param = partition_param
        self.partition_delay = partition_delay
        self.page_limit = page_limit

        self.last_cursor: str | None = None
        self.failures: list[PartitionFetchError] = []
        self.records_by_partition: dict[str, int] = {}

    def fetch_across_partitions(
        self,
        path: str,
        base_params: Mapping[str, Any] | None,
        partition_ids: Sequence[str],
    ) -> list[Any]:
        """
        Fetch every partition in order, isolating per-partition failures.

        AuthError and cancellation propagate; any other error is
        recorded in `failures` and the partition is skipped.
        """
        self.last_cursor = None
        self.failures = []
        self.records_by_partition = {}

        merged: list[Any] = []

        for index, partition_id in enumerate(partition_ids):
            if index > 0 and self.partition_delay > 0:
                self.pacer.sleep(self.partition_delay)

            log = logger.bind(endpoint=path, partition=partition_id)
            params = dict(base_params or {})
            params[self.partition_param] = [partition_id]

            # A partition contributes all of its pages or none of them
            partition_records: list[Any] = []
            try:
                for page in self.paginator.fetch_all(path, params, self.page_limit):
                    partition_records.extend(page.records)
                    if page.next_token:
                        self.last_cursor = page.next_token
            except (AuthError, SyncCancelled):
                raise
            except Exception as e:
                self.failures.append(PartitionFetchError(partition_id, e))
                log.error(
                    "Partition fetch failed, skipping",
                    error=str(e),
                    error_type=type(e).__name__,
                    status_code=getattr(e, "status_code", None),
                    discarded=len(partition_records),
                )
                continue

            merged.extend(partition_records)
            self.records_by_partition[partition_id] = len(partition_records)
            log.info("Partition complete", count=len(partition_records))

        logger.info(
            "Fetched across partitions",
            endpoint=path,
            partitions=len(partition_ids),
            failed=len(self.failures),
            total=len(merged),
        )
        return merged

    @property
    def all_failed(self) -> bool:
        """True when partitions were attempted and none succeeded."""
        return bool(self.failures) and not self.records_by_partition
