"""
Pytest configuration and fixtures for SP-API order sync tests.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from spapi_order_sync.auth import AccessToken
from spapi_order_sync.client import SPAPIClient
from spapi_order_sync.pacing import Pacer


class StaticTokens:
    """Token source that never refreshes; counts how often it is asked."""

    def __init__(self, value: str = "Atza|test-access-token"):
        self.value = value
        self.calls = 0
        self.refresh_count = 0

    def get_valid_token(self) -> AccessToken:
        self.calls += 1
        return AccessToken(self.value, datetime.now(timezone.utc) + timedelta(hours=1))

    def close(self) -> None:
        pass


class RoutedTransport(httpx.MockTransport):
    """
    Mock transport keyed by (method, path).

    Each route holds a queue of responses consumed in order; the last one
    repeats. A queue entry may be an httpx.Response, an exception to raise,
    or a callable taking the request and returning either.
    Unrouted requests get a 404.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list] = {}
        self.requests: list[httpx.Request] = []
        super().__init__(self._handle)

    def add(self, method: str, path: str, *responses) -> "RoutedTransport":
        self.routes.setdefault((method, path), []).extend(responses)
        return self

    def requests_to(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"errors": [{"code": "NotFound"}]})

        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(entry) and not isinstance(entry, (httpx.Response, BaseException)):
            entry = entry(request)
        if isinstance(entry, BaseException):
            raise entry
        # Fresh copy so a repeated entry is never sent twice
        return httpx.Response(entry.status_code, headers=entry.headers, content=entry.content)


def throttled() -> httpx.Response:
    return httpx.Response(429, json={"errors": [{"code": "QuotaExceeded"}]})


@pytest.fixture
def sleeps():
    """Durations passed to the pacer, in order."""
    return []


@pytest.fixture
def pacer(sleeps):
    return Pacer(sleep_func=sleeps.append)


@pytest.fixture
def tokens():
    return StaticTokens()


@pytest.fixture
def transport():
    return RoutedTransport()


@pytest.fixture
def client(tokens, pacer, transport):
    return SPAPIClient(tokens, region="na", pacer=pacer, transport=transport)


@pytest.fixture
def throttle_response():
    return throttled


@pytest.fixture
def sample_order_data():
    """Sample order from getOrders."""
    return {
        "AmazonOrderId": "902-3159896-1390916",
        "PurchaseDate": "2025-05-05T16:02:33Z",
        "LastUpdateDate": "2025-05-06T08:11:02Z",
        "OrderStatus": "Shipped",
        "FulfillmentChannel": "MFN",
        "SalesChannel": "Amazon.com",
        "ShipServiceLevel": "Std US D2D Dom",
        "OrderTotal": {"CurrencyCode": "USD", "Amount": "24.99"},
        "NumberOfItemsShipped": 1,
        "NumberOfItemsUnshipped": 0,
        "PaymentMethod": "Other",
        "MarketplaceId": "ATVPDKIKX0DER",
        "IsPrime": False,
        "IsBusinessOrder": False,
        "ShippingAddress": {"StateOrRegion": "WA", "PostalCode": "98101", "CountryCode": "US"},
    }


@pytest.fixture
def order_factory(sample_order_data):
    """Build order payloads with distinct ids."""
    def make(order_id: str, marketplace_id: str = "ATVPDKIKX0DER", **overrides):
        data = dict(sample_order_data)
        data["AmazonOrderId"] = order_id
        data["MarketplaceId"] = marketplace_id
        data.update(overrides)
        return data
    return make


@pytest.fixture
def sample_order_item_data():
    """Sample item from getOrderItems."""
    return {
        "ASIN": "B00551Q3CS",
        "OrderItemId": "68828574383266",
        "SellerSKU": "CBA_OTF_1",
        "Title": "Example item name",
        "QuantityOrdered": 1,
        "QuantityShipped": 1,
        "ItemPrice": {"CurrencyCode": "USD", "Amount": "24.99"},
        "ItemTax": {"CurrencyCode": "USD", "Amount": "2.10"},
        "PromotionIds": ["FREESHIP"],
        "IsGift": "false",
        "ConditionId": "New",
    }


@pytest.fixture
def sample_participations_response():
    """Sample getMarketplaceParticipations response with two marketplaces."""
    return {
        "payload": [
            {
                "marketplace": {
                    "id": "ATVPDKIKX0DER",
                    "name": "Amazon.com",
                    "countryCode": "US",
                    "defaultCurrencyCode": "USD",
                    "defaultLanguageCode": "en_US",
                    "domainName": "www.amazon.com",
                },
                "participation": {"isParticipating": True, "hasSuspendedListings": False},
                "storeName": "Example Store",
            },
            {
                "marketplace": {
                    "id": "A2EUQ1WTGCTBG2",
                    "name": "Amazon.ca",
                    "countryCode": "CA",
                    "defaultCurrencyCode": "CAD",
                    "defaultLanguageCode": "en_CA",
                    "domainName": "www.amazon.ca",
                },
                "participation": {"isParticipating": True, "hasSuspendedListings": False},
                "storeName": "Example Store",
            },
        ]
    }


@pytest.fixture
def sample_report_tsv():
    """Header plus four lines, one of them blank: three data rows."""
    return (
        "amazon-order-id\tmerchant-order-id\tpurchase-date\torder-status\tsku\n"
        "111-0000001-0000001\t\t2025-05-05T10:00:00+00:00\tShipped\tSKU-1\n"
        "\n"
        "111-0000002-0000002\t\t2025-05-05T11:00:00+00:00\tPending\tSKU-2\n"
        "111-0000003-0000003\t\t2025-05-05T12:00:00+00:00\tShipped\tSKU-3\n"
    )
