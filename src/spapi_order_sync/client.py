"""
Selling Partner API Client

Synchronous HTTP client with:
- LWA access token attached to every request
- Retry with exponential backoff for throttling (429) and transient network errors
- Connection pooling
- Request/response logging
- Provider-specific query encoding (repeated keys, per-endpoint comma joins)
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Mapping

import httpx
import structlog
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from spapi_order_sync.auth import TokenManager
from spapi_order_sync.exceptions import (
    ApiError,
    AuthError,
    RateLimitExceeded,
    SPAPIError,
    InvalidResponseError,
)
from spapi_order_sync.models import (
    CreateReportResponse,
    MarketplaceParticipation,
    MarketplaceParticipationsResponse,
    Order,
    ReportDocumentInfo,
    ReportStatusResponse,
    parse_model,
)
from spapi_order_sync.pacing import Pacer

logger = structlog.get_logger(__name__)

REGIONS = ("na", "eu", "fe")
ACCESS_TOKEN_HEADER = "x-amz-access-token"

MARKETPLACE_PARTICIPATIONS_PATH = "/sellers/v1/marketplaceParticipations"
ORDERS_PATH = "/orders/v0/orders"
REPORTS_PATH = "/reports/2021-06-30/reports"
REPORT_DOCUMENTS_PATH = "/reports/2021-06-30/documents"

# getOrders declares these filters as comma-delimited rather than exploded
COMMA_JOINED_PARAMS: dict[str, frozenset[str]] = {
    ORDERS_PATH: frozenset({"MarketplaceIds", "OrderStatuses"}),
}


# ---------------------------------------------------------------------------
# Request encoding
# ---------------------------------------------------------------------------

def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def encode_query(
    params: Mapping[str, Any] | None,
    comma_joined: frozenset[str] = frozenset(),
) -> tuple[tuple[str, str], ...]:
    """
    Flatten params into ordered (key, value) pairs.

    Sequence values become repeated keys (key=v1&key=v2) in input order,
    unless the key is listed in `comma_joined`. None values are dropped.
    """
    pairs: list[tuple[str, str]] = []
    for key, value in (params or {}).items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            values = [_format_value(v) for v in value if v is not None]
            if not values:
                continue
            if key in comma_joined:
                pairs.append((key, ",".join(values)))
            else:
                pairs.extend((key, v) for v in values)
        else:
            pairs.append((key, _format_value(value)))
    return tuple(pairs)


@dataclass(frozen=True)
class RequestDescriptor:
    """One API call: method, path, encoded query and optional JSON body."""
    method: str
    path: str
    query: tuple[tuple[str, str], ...] = ()
    json_body: Mapping[str, Any] | None = field(default=None, compare=False)

    @classmethod
    def build(
        cls,
        method: str,
        path: str,
        params: Mapping[str, Any] | None = None,
        json_body: Mapping[str, Any] | None = None,
    ) -> "RequestDescriptor":
        """Build a descriptor, applying the endpoint's query encoding rules."""
        comma_joined = COMMA_JOINED_PARAMS.get(path, frozenset())
        return cls(
            method=method.upper(),
            path=path,
            query=encode_query(params, comma_joined),
            json_body=json_body,
        )


# ---------------------------------------------------------------------------
# Retry Configuration
# ---------------------------------------------------------------------------

class ThrottledError(SPAPIError):
    """A single 429 response. Retried, never surfaced to callers."""
    pass


def is_retryable_error(exception: BaseException) -> bool:
    """Throttling and transport-level failures are retried; nothing else."""
    if isinstance(exception, ThrottledError):
        return True
    # Covers connection resets, connect/read errors and timeouts
    if isinstance(exception, httpx.TransportError):
        return True
    return False


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SPAPIClient:
    """
    Rate-limit-aware Selling Partner API client.

    Features:
    - Fresh LWA token checked before every attempt
    - Exponential backoff (1, 2, 4, ... capped at max_wait_time) on 429 and
      transport errors, bounded by max_retries attempts per call
    - Immediate ApiError for every other non-2xx response
    - Cancellable sleeps through a shared Pacer
    - Structured logging for observability

    Example:
        tokens = TokenManager(client_id, client_secret, refresh_token)
        client = SPAPIClient(tokens, region="na")

        with client:
            for participation in client.get_marketplace_participations():
                print(participation.marketplace_id)
    """

    def __init__(
        self,
        token_manager: TokenManager,
        region: str = "na",
        max_retries: int = 5,
        max_wait_time: float = 32.0,
        timeout: float = 30.0,
        pacer: Pacer | None = None,
        base_url: str | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        Initialize the client.

        Args:
            token_manager: Source of access tokens
            region: SP-API region (na, eu, fe)
            max_retries: Max attempts per call for throttled/transient failures
            max_wait_time: Backoff ceiling in seconds
            timeout: Request timeout in seconds
            pacer: Sleeper honoring cancellation (a default one is created if omitted)
            base_url: Override the regional endpoint (sandbox, tests)
            transport: Custom httpx transport (tests)
        """
        if region not in REGIONS:
            raise ValueError(f"Invalid region '{region}'. Must be one of: {', '.join(REGIONS)}")
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        self.token_manager = token_manager
        self.region = region
        self.base_url = (base_url or f"https://sellingpartnerapi-{region}.amazon.com").rstrip("/")
        self.max_retries = max_retries
        self.max_wait_time = max_wait_time
        self.timeout = timeout
        self.pacer = pacer or Pacer()

        self._transport = transport
        self._client: httpx.Client | None = None

        # Request counters for observability
        self._request_count = 0
        self._error_count = 0
        self._retry_count = 0

        self._log = logger.bind(region=region)

    def __enter__(self) -> "SPAPIClient":
        """Initialize HTTP client with connection pooling."""
        self._client = self._new_http_client()
        return self

    def __exit__(self, *args: Any) -> None:
        """Clean up HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def _new_http_client(self) -> httpx.Client:
        return httpx.Client(
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            headers={"User-Agent": "spapi-order-sync/1.0 (Language=Python)"},
            transport=self._transport,
        )

    @property
    def client(self) -> httpx.Client:
        """Get HTTP client, creating if needed."""
        if self._client is None:
            self._client = self._new_http_client()
        return self._client

    # -------------------------------------------------------------------------
    # Core request path
    # -------------------------------------------------------------------------

    def _retrying(self, log: Any) -> Retrying:
        """A fresh retry controller; attempt counters are per call."""

        def log_retry(retry_state: RetryCallState) -> None:
            self._retry_count += 1
            error = retry_state.outcome.exception() if retry_state.outcome else None
            log.warning(
                "Retrying request",
                attempt=retry_state.attempt_number,
                max_attempts=self.max_retries,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(error),
            )

        return Retrying(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=1, max=self.max_wait_time),
            sleep=self.pacer.sleep,
            before_sleep=log_retry,
            reraise=False,
        )

    def _run_with_retries(self, log: Any, what: str, func: Callable[[], Any]) -> Any:
        try:
            return self._retrying(log)(func)
        except RetryError as e:
            last_error = e.last_attempt.exception()
            log.error("Retries exhausted", attempts=self.max_retries, error=str(last_error))
            raise RateLimitExceeded(
                f"{what} failed after {self.max_retries} attempts: {last_error}",
                attempts=self.max_retries,
                status_code=getattr(last_error, "status_code", None),
            ) from last_error

    def execute(self, request: RequestDescriptor) -> dict[str, Any]:
        """
        Execute a request with token, throttling retries and error mapping.

        Raises:
            AuthError: Token acquisition failed
            ApiError: Non-retryable HTTP failure
            RateLimitExceeded: Retries exhausted
            InvalidResponseError: 2xx body is not a JSON object, or the response
                could not be read (decoding, redirect loop)
            SyncCancelled: Run cancelled or past its deadline
        """
        log = self._log.bind(endpoint=request.path, method=request.method)
        return self._run_with_retries(
            log,
            f"{request.method} {request.path}",
            lambda: self._send(request, log),
        )

    def _send(self, request: RequestDescriptor, log: Any) -> dict[str, Any]:
        self.pacer.check()

        token = self.token_manager.get_valid_token()

        self._request_count += 1
        request_id = self._request_count
        log.debug("API request", request_id=request_id, query=request.query)

        start_time = time.monotonic()
        try:
            response = self.client.request(
                request.method,
                f"{self.base_url}{request.path}",
                params=list(request.query),
                json=dict(request.json_body) if request.json_body is not None else None,
                headers={ACCESS_TOKEN_HEADER: token.value, "Accept": "application/json"},
            )
        except httpx.TransportError:
            self._error_count += 1
            raise
        except httpx.HTTPError as e:
            self._error_count += 1
            raise InvalidResponseError(f"Unreadable response from {request.path}: {e}") from e
        elapsed = time.monotonic() - start_time

        log.debug(
            "API response",
            request_id=request_id,
            status_code=response.status_code,
            elapsed_ms=round(elapsed * 1000),
        )

        if response.status_code == 429:
            self._error_count += 1
            raise ThrottledError(
                "Rate limit exceeded - will retry",
                status_code=429,
                response_body=response.text[:500],
            )

        if not response.is_success:
            self._error_count += 1
            log.error(
                "API error",
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise ApiError(response.status_code, response.text, endpoint=request.path)

        if not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise InvalidResponseError(f"Invalid JSON response from {request.path}: {e}")

        if not isinstance(data, dict):
            raise InvalidResponseError(
                f"Expected a JSON object from {request.path}, got {type(data).__name__}"
            )
        return data

    def download(self, url: str) -> bytes:
        """
        Fetch a pre-signed URL without the access token header.

        Transport errors and 429s are retried like API calls.
        """
        log = self._log.bind(endpoint="document-download")

        def _do_download() -> bytes:
            self.pacer.check()
            self._request_count += 1
            try:
                # Pre-signed URLs are sent without the access token header
                response = self.client.get(url)
            except httpx.TransportError:
                self._error_count += 1
                raise
            except httpx.HTTPError as e:
                self._error_count += 1
                raise InvalidResponseError(f"Unreadable document download: {e}") from e
            if response.status_code == 429:
                self._error_count += 1
                raise ThrottledError("Download throttled - will retry", status_code=429)
            if not response.is_success:
                self._error_count += 1
                raise ApiError(response.status_code, response.text[:500], endpoint="document-download")
            return response.content

        return self._run_with_retries(log, "Document download", _do_download)

    # -------------------------------------------------------------------------
    # Sellers
    # -------------------------------------------------------------------------

    def get_marketplace_participations(self) -> list[MarketplaceParticipation]:
        """List the marketplaces the seller participates in."""
        data = self.execute(RequestDescriptor.build("GET", MARKETPLACE_PARTICIPATIONS_PATH))
        response = parse_model(MarketplaceParticipationsResponse, data, "marketplaceParticipations")
        return response.payload

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    def get_order(self, order_id: str) -> Order:
        """Get a single order by id."""
        data = self.execute(RequestDescriptor.build("GET", f"{ORDERS_PATH}/{order_id}"))
        payload = data.get("payload")
        if not isinstance(payload, dict):
            raise InvalidResponseError(f"getOrder response for {order_id} has no payload")
        return parse_model(Order, payload, "getOrder")

    @staticmethod
    def order_items_path(order_id: str) -> str:
        return f"{ORDERS_PATH}/{order_id}/orderItems"

    # -------------------------------------------------------------------------
    # Reports
    # -------------------------------------------------------------------------

    def create_report(
        self,
        report_type: str,
        marketplace_ids: list[str],
        data_start_time: str | None = None,
        data_end_time: str | None = None,
    ) -> CreateReportResponse:
        """Submit an asynchronous report job."""
        body: dict[str, Any] = {"reportType": report_type, "marketplaceIds": list(marketplace_ids)}
        if data_start_time:
            body["dataStartTime"] = data_start_time
        if data_end_time:
            body["dataEndTime"] = data_end_time

        data = self.execute(RequestDescriptor.build("POST", REPORTS_PATH, json_body=body))
        return parse_model(CreateReportResponse, data, "createReport")

    def get_report(self, report_id: str) -> ReportStatusResponse:
        """Get the processing status of a report job."""
        data = self.execute(RequestDescriptor.build("GET", f"{REPORTS_PATH}/{report_id}"))
        return parse_model(ReportStatusResponse, data, "getReport")

    def get_report_document(self, document_id: str) -> ReportDocumentInfo:
        """Get the download location of a finished report."""
        data = self.execute(RequestDescriptor.build("GET", f"{REPORT_DOCUMENTS_PATH}/{document_id}"))
        return parse_model(ReportDocumentInfo, data, "getReportDocument")

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        return {
            "region": self.region,
            "request_count": self._request_count,
            "error_count": self._error_count,
            "retry_count": self._retry_count,
            "error_rate": round(self._error_count / max(1, self._request_count), 4),
            "token_refreshes": self.token_manager.refresh_count,
            "pacer": self.pacer.get_stats(),
        }

    def health_check(self) -> dict[str, Any]:
        """Verify credentials and API connectivity."""
        try:
            participations = self.get_marketplace_participations()
            return {
                "status": "healthy",
                "region": self.region,
                "marketplaces": [p.marketplace_id for p in participations if p.marketplace_id],
            }
        except AuthError as e:
            return {"status": "auth_error", "message": str(e)}
        except SPAPIError as e:
            return {"status": "error", "message": str(e)}
