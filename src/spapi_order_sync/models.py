"""
Pydantic models for Selling Partner API responses.

These models validate each endpoint's response shape at the parse boundary
so required fields fail fast instead of flowing through as missing values.
Unknown fields are kept (extra="allow") and survive `raw()`.
"""

from datetime import datetime
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from spapi_order_sync.exceptions import InvalidResponseError

M = TypeVar("M", bound=BaseModel)


class SPAPIModel(BaseModel):
    """Base model: snake_case attributes, provider field names as aliases."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def raw(self) -> dict[str, Any]:
        """Dump back to the provider's field names."""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def parse_model(model: type[M], data: Any, context: str) -> M:
    """Validate `data` into `model`, raising InvalidResponseError on failure."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise InvalidResponseError(
            f"Invalid {context} response: {e.error_count()} validation error(s): "
            f"{e.errors()[0]['loc']} {e.errors()[0]['msg']}"
        ) from e


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

class TokenResponse(BaseModel):
    """Response from the LWA token endpoint."""

    access_token: str = Field(min_length=1)
    expires_in: int = Field(gt=0)
    token_type: str | None = None
    refresh_token: str | None = None


# ---------------------------------------------------------------------------
# Sellers
# ---------------------------------------------------------------------------

class Marketplace(SPAPIModel):
    id: str | None = None
    name: str | None = None
    country_code: str | None = Field(None, alias="countryCode")
    default_currency_code: str | None = Field(None, alias="defaultCurrencyCode")
    default_language_code: str | None = Field(None, alias="defaultLanguageCode")
    domain_name: str | None = Field(None, alias="domainName")


class Participation(SPAPIModel):
    is_participating: bool = Field(False, alias="isParticipating")
    has_suspended_listings: bool = Field(False, alias="hasSuspendedListings")


class MarketplaceParticipation(SPAPIModel):
    """One marketplace the seller participates in."""

    marketplace: Marketplace | None = None
    participation: Participation | None = None
    store_name: str | None = Field(None, alias="storeName")

    @property
    def marketplace_id(self) -> str | None:
        return self.marketplace.id if self.marketplace else None


class MarketplaceParticipationsResponse(SPAPIModel):
    """Response from GET /sellers/v1/marketplaceParticipations"""

    payload: list[MarketplaceParticipation] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------

class Money(SPAPIModel):
    currency_code: str | None = Field(None, alias="CurrencyCode")
    amount: str | None = Field(None, alias="Amount")


class Order(SPAPIModel):
    """An order as returned by getOrders / getOrder."""

    amazon_order_id: str = Field(alias="AmazonOrderId", min_length=1)
    seller_order_id: str | None = Field(None, alias="SellerOrderId")
    purchase_date: datetime = Field(alias="PurchaseDate")
    last_update_date: datetime | None = Field(None, alias="LastUpdateDate")
    order_status: str = Field(alias="OrderStatus")
    fulfillment_channel: str | None = Field(None, alias="FulfillmentChannel")
    sales_channel: str | None = Field(None, alias="SalesChannel")
    order_channel: str | None = Field(None, alias="OrderChannel")
    ship_service_level: str | None = Field(None, alias="ShipServiceLevel")
    order_total: Money | None = Field(None, alias="OrderTotal")
    number_of_items_shipped: int = Field(0, alias="NumberOfItemsShipped")
    number_of_items_unshipped: int = Field(0, alias="NumberOfItemsUnshipped")
    payment_execution_detail: list[dict[str, Any]] = Field(
        default_factory=list, alias="PaymentExecutionDetail"
    )
    payment_method: str | None = Field(None, alias="PaymentMethod")
    marketplace_id: str | None = Field(None, alias="MarketplaceId")
    shipping_address: dict[str, Any] | None = Field(None, alias="ShippingAddress")
    buyer_info: dict[str, Any] | None = Field(None, alias="BuyerInfo")
    order_type: str | None = Field(None, alias="OrderType")
    is_business_order: bool | None = Field(None, alias="IsBusinessOrder")
    is_prime: bool | None = Field(None, alias="IsPrime")
    is_replacement_order: bool | None = Field(None, alias="IsReplacementOrder")


class OrderItem(SPAPIModel):
    """A line item from getOrderItems."""

    asin: str = Field(alias="ASIN")
    order_item_id: str = Field(alias="OrderItemId", min_length=1)
    seller_sku: str | None = Field(None, alias="SellerSKU")
    title: str | None = Field(None, alias="Title")
    quantity_ordered: int = Field(0, alias="QuantityOrdered")
    quantity_shipped: int = Field(0, alias="QuantityShipped")
    item_price: Money | None = Field(None, alias="ItemPrice")
    item_tax: Money | None = Field(None, alias="ItemTax")
    shipping_price: Money | None = Field(None, alias="ShippingPrice")
    shipping_tax: Money | None = Field(None, alias="ShippingTax")
    promotion_discount: Money | None = Field(None, alias="PromotionDiscount")
    promotion_ids: list[str] = Field(default_factory=list, alias="PromotionIds")
    is_gift: bool = Field(False, alias="IsGift")
    condition_id: str | None = Field(None, alias="ConditionId")
    condition_note: str | None = Field(None, alias="ConditionNote")
    serial_number_required: bool = Field(False, alias="SerialNumberRequired")
    is_transparency: bool = Field(False, alias="IsTransparency")

    @field_validator("is_gift", mode="before")
    @classmethod
    def normalize_is_gift(cls, v: Any) -> bool:
        """The API has sent IsGift both as a boolean and as "true"/"false"."""
        if v is None:
            return False
        if isinstance(v, str):
            return v.strip().lower() == "true"
        return bool(v)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class ReportStatus(str, Enum):
    """Processing status of a report job."""

    SUBMITTED = "SUBMITTED"
    IN_QUEUE = "IN_QUEUE"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FATAL = "FATAL"
    CANCELLED = "CANCELLED"
    TIMED_OUT = "TIMED_OUT"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def is_failure(self) -> bool:
        return self in (ReportStatus.FATAL, ReportStatus.CANCELLED, ReportStatus.TIMED_OUT)


TERMINAL_STATUSES = frozenset({
    ReportStatus.DONE,
    ReportStatus.FATAL,
    ReportStatus.CANCELLED,
    ReportStatus.TIMED_OUT,
})


class CreateReportResponse(SPAPIModel):
    """Response from POST /reports/2021-06-30/reports"""

    report_id: str = Field(alias="reportId", min_length=1)


class ReportStatusResponse(SPAPIModel):
    """Response from GET /reports/2021-06-30/reports/{reportId}"""

    report_id: str = Field(alias="reportId")
    report_type: str | None = Field(None, alias="reportType")
    processing_status: ReportStatus = Field(alias="processingStatus")
    report_document_id: str | None = Field(None, alias="reportDocumentId")
    marketplace_ids: list[str] = Field(default_factory=list, alias="marketplaceIds")
    data_start_time: datetime | None = Field(None, alias="dataStartTime")
    data_end_time: datetime | None = Field(None, alias="dataEndTime")


class ReportDocumentInfo(SPAPIModel):
    """Response from GET /reports/2021-06-30/documents/{reportDocumentId}"""

    report_document_id: str = Field(alias="reportDocumentId")
    url: str | None = None
    compression_algorithm: str | None = Field(None, alias="compressionAlgorithm")
