"""
Cursor-based pagination over SP-API list endpoints.
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel

from spapi_order_sync.client import RequestDescriptor, SPAPIClient
from spapi_order_sync.models import parse_model

logger = structlog.get_logger(__name__)

T = TypeVar("T")

NEXT_TOKEN_FIELD = "NextToken"


@dataclass
class PageResult(Generic[T]):
    """One page of records and the cursor for the next page, if any."""
    records: list[T] = field(default_factory=list)
    next_token: str | None = None

    @property
    def is_last(self) -> bool:
        return not self.next_token


class Paginator:
    """
    Follows `NextToken` cursors until a list endpoint is exhausted.

    Each `fetch_all()` call starts from the first page; the generator is
    lazy, so pages are requested only as they are consumed.

    Example:
        paginator = Paginator(client, records_key="Orders", record_model=Order)

        for page in paginator.fetch_all("/orders/v0/orders", params):
            persist(page.records)
    """

    def __init__(
        self,
        client: SPAPIClient,
        records_key: str,
        record_model: type[BaseModel] | None = None,
        cursor_field: str = NEXT_TOKEN_FIELD,
    ):
        """
        Initialize paginator.

        Args:
            client: Transport used for every page request
            records_key: Key of the record list inside `payload`
            record_model: Validate each record into this model (None = raw dicts)
            cursor_field: Name of the continuation cursor, in the payload and
                          in the request query
        """
        self.client = client
        self.records_key = records_key
        self.record_model = record_model
        self.cursor_field = cursor_field

    def fetch_all(
        self,
        path: str,
        base_params: Mapping[str, Any] | None = None,
        page_limit: int | None = None,
    ) -> Iterator[PageResult[Any]]:
        """
        Yield pages in order until the cursor is absent or `page_limit` is hit.

        A response without a `payload` object is logged and ends the stream.
        """
        log = logger.bind(endpoint=path, records_key=self.records_key)
        next_token: str | None = None
        pages = 0

        while page_limit is None or pages < page_limit:
            params = dict(base_params or {})
            if next_token:
                params[self.cursor_field] = next_token

            data = self.client.execute(RequestDescriptor.build("GET", path, params))

            payload = data.get("payload")
            if not isinstance(payload, dict):
                log.warning(
                    "Response has no payload, treating as end of stream",
                    page=pages + 1,
                    keys=sorted(data.keys()),
                    errors=data.get("errors"),
                )
                return

            page = PageResult(
                records=self._parse_records(payload.get(self.records_key) or [], path),
                next_token=payload.get(self.cursor_field) or None,
            )
            pages += 1

            log.info(
                "Fetched page",
                page=pages,
                count=len(page.records),
                has_more=not page.is_last,
            )
            yield page

            if page.is_last:
                return
            next_token = page.next_token

        log.info("Page limit reached", page_limit=page_limit)

    def iter_records(
        self,
        path: str,
        base_params: Mapping[str, Any] | None = None,
        page_limit: int | None = None,
    ) -> Iterator[Any]:
        """Flatten `fetch_all()` into individual records."""
        for page in self.fetch_all(path, base_params, page_limit):
            yield from page.records

    def _parse_records(self, raw_records: Any, path: str) -> list[Any]:
        if not isinstance(raw_records, list):
            raw_records = [raw_records]
        if self.record_model is None:
            return list(raw_records)
        return [parse_model(self.record_model, record, path) for record in raw_records]
