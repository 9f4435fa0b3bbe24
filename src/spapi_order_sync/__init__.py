"""
SP-API Order Sync

Synchronizes marketplace orders and order reports from the Amazon Selling
Partner API into pluggable sinks.

Features:
- LWA token caching with single-flight refresh
- Exponential backoff on throttling and transient network errors
- NextToken pagination
- Per-marketplace fetching with partial-failure isolation
- Report job polling with persisted state transitions

Quick Start:
    pip install spapi-order-sync
    export SPAPI_CLIENT_ID=... SPAPI_CLIENT_SECRET=... SPAPI_REFRESH_TOKEN=...
    spapi-sync test      # Verify credentials
    spapi-sync sync      # Run a sync
"""

from spapi_order_sync.auth import AccessToken, TokenManager
from spapi_order_sync.client import RequestDescriptor, SPAPIClient, encode_query
from spapi_order_sync.config import SyncConfig
from spapi_order_sync.exceptions import (
    ApiError,
    AuthError,
    ConfigError,
    InvalidReportData,
    InvalidResponseError,
    PartitionFetchError,
    RateLimitExceeded,
    ReportFailed,
    ReportTimeout,
    SPAPIError,
    SyncAborted,
    SyncCancelled,
)
from spapi_order_sync.models import (
    MarketplaceParticipation,
    Order,
    OrderItem,
    ReportStatus,
)
from spapi_order_sync.pacing import Pacer
from spapi_order_sync.paginator import PageResult, Paginator
from spapi_order_sync.partitions import MultiPartitionFetcher
from spapi_order_sync.reports import (
    ReportDocument,
    ReportJobPoller,
    ReportTransition,
    parse_report_rows,
)
from spapi_order_sync.state import JsonLinesSink, NullSink, ReportStateStore
from spapi_order_sync.sync import OrderSync, SyncSummary

__version__ = "1.0.0"
__all__ = [
    # Pipeline
    "OrderSync",
    "SyncSummary",
    "SyncConfig",

    # Access layer
    "AccessToken",
    "TokenManager",
    "SPAPIClient",
    "RequestDescriptor",
    "encode_query",
    "Pacer",
    "Paginator",
    "PageResult",
    "MultiPartitionFetcher",

    # Reports
    "ReportJobPoller",
    "ReportDocument",
    "ReportTransition",
    "ReportStatus",
    "parse_report_rows",

    # Models
    "MarketplaceParticipation",
    "Order",
    "OrderItem",

    # Sinks
    "JsonLinesSink",
    "NullSink",
    "ReportStateStore",

    # Errors
    "SPAPIError",
    "AuthError",
    "ApiError",
    "RateLimitExceeded",
    "InvalidResponseError",
    "ReportFailed",
    "ReportTimeout",
    "InvalidReportData",
    "PartitionFetchError",
    "SyncCancelled",
    "SyncAborted",
    "ConfigError",
]
