"""
Domain Models - Entitlement targets, receipts and processing results.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
Dictionaries only appear at the JSON boundary (to_dict / target_from_dict).
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, ClassVar


class Vendor(str, Enum):
    """Store that issued a purchase."""

    APPLE = "apple"
    GOOGLE = "google"


class SubscriptionType(str, Enum):
    """Executor subscription families sold through the stores."""

    SERVICE = "service"
    RENT = "rent"
    WORK = "work"


class TargetKind(str, Enum):
    """Tag of the EntitlementTarget variant."""

    RESPONSES = "responses"
    SUBSCRIPTION = "subscription"
    TOP = "top"
    BUSINESS = "business"


class CanonicalPurchaseState(str, Enum):
    """Vendor-neutral purchase state, derived before any business branch runs."""

    PURCHASED = "purchased"
    PENDING = "pending"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


class ProcessingStage(str, Enum):
    """States of one (vendor, receipt key) through the purchase processor."""

    UNSEEN = "unseen"
    VERIFYING = "verifying"
    OWNERSHIP_CHECKED = "ownership_checked"
    PERSISTED = "persisted"
    APPLIED = "applied"
    ROLLED_BACK = "rolled_back"
    ALREADY_PROCESSED = "already_processed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ProcessingStage.APPLIED,
            ProcessingStage.ROLLED_BACK,
            ProcessingStage.ALREADY_PROCESSED,
        )


DEFAULT_RESPONSES_QUANTITY = 10


# ============================================================================
# Entitlement targets
# ============================================================================


@dataclass(frozen=True)
class ResponsesTarget:
    """Response-quota top-up."""

    kind: ClassVar[TargetKind] = TargetKind.RESPONSES

    quantity: int

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive: {self.quantity}")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "quantity": self.quantity}


@dataclass(frozen=True)
class SubscriptionTarget:
    """Subscription time extension."""

    kind: ClassVar[TargetKind] = TargetKind.SUBSCRIPTION

    subscription_type: SubscriptionType
    months: int

    def __post_init__(self) -> None:
        if not isinstance(self.subscription_type, SubscriptionType):
            raise ValueError(f"invalid subscription_type: {self.subscription_type!r}")
        if self.months <= 0:
            raise ValueError("months must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "subscription_type": self.subscription_type.value,
            "months": self.months,
        }


@dataclass(frozen=True)
class TopTarget:
    """Listing boost bound to one concrete listing."""

    kind: ClassVar[TargetKind] = TargetKind.TOP

    listing_type: str
    listing_id: int
    duration_days: int

    def __post_init__(self) -> None:
        if not self.listing_type:
            raise ValueError("listing_type is required")
        if self.listing_id <= 0:
            raise ValueError("id must be positive")
        if self.duration_days <= 0:
            raise ValueError("duration_days must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "listing_type": self.listing_type,
            "id": self.listing_id,
            "duration_days": self.duration_days,
        }


@dataclass(frozen=True)
class BusinessTarget:
    """Business seat licenses."""

    kind: ClassVar[TargetKind] = TargetKind.BUSINESS

    seats: int

    def __post_init__(self) -> None:
        if self.seats <= 0:
            raise ValueError("seats must be positive")

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "seats": self.seats}


EntitlementTarget = ResponsesTarget | SubscriptionTarget | TopTarget | BusinessTarget


@dataclass(frozen=True)
class TopProduct:
    """
    Catalog entry for a boost SKU.

    The SKU only proves that a boost was bought; the listing it applies to is
    bound per request, see EntitlementTargetResolver.
    """

    kind: ClassVar[TargetKind] = TargetKind.TOP

    duration_days: int

    def __post_init__(self) -> None:
        if self.duration_days <= 0:
            raise ValueError("duration_days must be positive")

    def bind(self, listing_type: str, listing_id: int) -> TopTarget:
        return TopTarget(
            listing_type=listing_type,
            listing_id=listing_id,
            duration_days=self.duration_days,
        )


CatalogEntry = ResponsesTarget | SubscriptionTarget | TopProduct | BusinessTarget


def _int_field(data: dict[str, Any], key: str) -> int:
    value = data.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


def catalog_entry_from_dict(data: dict[str, Any]) -> CatalogEntry:
    """
    Build a catalog entry from its configuration JSON.

    Raises:
        ValueError: If the entry type is unknown or a field is invalid
    """
    kind = str(data.get("type", "")).strip()
    match kind:
        case TargetKind.RESPONSES.value:
            quantity = _int_field(data, "quantity")
            if quantity < 0:
                raise ValueError("quantity must be non-negative")
            return ResponsesTarget(quantity=quantity or DEFAULT_RESPONSES_QUANTITY)
        case TargetKind.SUBSCRIPTION.value:
            try:
                sub_type = SubscriptionType(str(data.get("subscription_type", "")).strip())
            except ValueError as exc:
                raise ValueError(
                    f"subscription_type: invalid value {data.get('subscription_type')!r}"
                ) from exc
            return SubscriptionTarget(subscription_type=sub_type, months=_int_field(data, "months"))
        case TargetKind.TOP.value:
            return TopProduct(duration_days=_int_field(data, "duration_days"))
        case TargetKind.BUSINESS.value:
            return BusinessTarget(seats=_int_field(data, "seats"))
        case _:
            raise ValueError(f"unsupported target type: {kind!r}")


def target_from_dict(data: dict[str, Any] | None) -> EntitlementTarget | None:
    """
    Decode a stored target snapshot.

    Empty snapshots (legacy rows written before targets were recorded) decode
    to None so callers can fall back to the catalog.
    """
    if not data or not str(data.get("type", "")).strip():
        return None
    if data["type"] == TargetKind.TOP.value:
        return TopTarget(
            listing_type=str(data.get("listing_type", "")),
            listing_id=_int_field(data, "id"),
            duration_days=_int_field(data, "duration_days"),
        )
    entry = catalog_entry_from_dict(data)
    if isinstance(entry, TopProduct):
        raise ValueError("top snapshot without binding")
    return entry


def parse_catalog(raw: str | Mapping[str, Any]) -> dict[str, CatalogEntry]:
    """
    Parse and validate a product catalog.

    Args:
        raw: Catalog JSON text or an already decoded mapping; empty text is an
            empty catalog

    Returns:
        Catalog keyed by trimmed product id

    Raises:
        ValueError: If the JSON is malformed or any entry is invalid
    """
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"invalid catalog JSON: {e}") from e
    else:
        data = raw

    if not isinstance(data, Mapping):
        raise ValueError("catalog must be a JSON object keyed by product id")

    catalog: dict[str, CatalogEntry] = {}
    for product_id, entry in data.items():
        key = str(product_id).strip()
        if not key:
            raise ValueError("catalog contains an empty product id")
        if not isinstance(entry, Mapping):
            raise ValueError(f"{key}: entry must be an object")
        try:
            catalog[key] = catalog_entry_from_dict(dict(entry))
        except ValueError as e:
            raise ValueError(f"{key}: {e}") from e
    return catalog


# ============================================================================
# Receipts and results
# ============================================================================


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class PurchaseReceipt:
    """
    Verified purchase as persisted for idempotency and ownership.

    receipt_key is the Apple transaction id or the Google purchase token;
    (vendor, receipt_key) is unique for the life of the row.
    """

    vendor: Vendor
    receipt_key: str
    owner_user_id: int
    product_id: str
    target: EntitlementTarget
    raw_payload: str = ""
    original_transaction_id: str | None = None
    order_id: str = ""
    environment: str = ""
    processed_at: datetime = field(default_factory=_utc_now)

    def __post_init__(self) -> None:
        if not self.receipt_key.strip():
            raise ValueError("receipt_key is required")
        if self.owner_user_id <= 0:
            raise ValueError("owner_user_id must be positive")


@dataclass(frozen=True)
class StoredReceipt:
    """
    Receipt as read back for reverse lookups.

    target is None for rows written before targets were recorded.
    """

    vendor: Vendor
    receipt_key: str
    owner_user_id: int
    product_id: str
    target: EntitlementTarget | None
    original_transaction_id: str | None = None


@dataclass(frozen=True)
class ProcessResult:
    """Outcome of running one purchase through the processor."""

    vendor: Vendor
    receipt_key: str
    stage: ProcessingStage
    target: EntitlementTarget

    @property
    def already_processed(self) -> bool:
        return self.stage == ProcessingStage.ALREADY_PROCESSED
