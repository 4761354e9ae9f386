"""
Google Play models - Immutable dataclasses for purchase verification.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import datetime

from iap_engine.models.domain import CanonicalPurchaseState

KIND_PRODUCT = "product"
KIND_SUBSCRIPTION = "subscription"

STATUS_PURCHASED = "PURCHASED"
STATUS_ACTIVE = "ACTIVE"
STATUS_CANCELED = "CANCELED"
STATUS_EXPIRED = "EXPIRED"
STATUS_PENDING = "PENDING"
STATUS_UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class GooglePurchase:
    """
    Normalized result of a products.get or subscriptionsv2.get call.

    purchase_state is 0 when the purchase currently entitles the user and 1
    otherwise; status carries the finer-grained vendor reading.
    """

    kind: str  # "product" or "subscription"
    product_id: str
    order_id: str
    purchase_token: str
    package_name: str
    purchase_state: int  # 0: active, 1: inactive
    status: str
    acknowledged: bool
    consumed: bool = False
    expiry_time: datetime | None = None  # Latest line-item expiry (subscriptions)
    raw: str = ""

    @property
    def canonical_state(self) -> CanonicalPurchaseState:
        if self.status == STATUS_PENDING:
            return CanonicalPurchaseState.PENDING
        if self.purchase_state == 0:
            return CanonicalPurchaseState.PURCHASED
        if self.status in (STATUS_CANCELED, STATUS_EXPIRED):
            return CanonicalPurchaseState.REVOKED
        return CanonicalPurchaseState.UNKNOWN

    def is_active(self) -> bool:
        """Check if the purchase currently grants its entitlement."""
        return self.canonical_state == CanonicalPurchaseState.PURCHASED

    def is_subscription(self) -> bool:
        return self.kind == KIND_SUBSCRIPTION


@dataclass(frozen=True)
class GooglePlayConfig:
    """Configuration for the Android Publisher API."""

    package_name: str
    service_account_json: str  # Raw JSON, base64 JSON or a file path

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.package_name.strip():
            raise ValueError("Package name required")
        if not self.service_account_json.strip():
            raise ValueError("Service account JSON required")
