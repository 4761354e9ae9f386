"""
Apple App Store models - Immutable dataclasses for JWS-decoded payloads.

NO DICTIONARIES - All data uses strongly typed models.

Apple App Store Server API v2 uses JWS (JSON Web Signature) format for
transaction, renewal and notification data.
"""

from dataclasses import dataclass
from datetime import datetime

from iap_engine.models.domain import CanonicalPurchaseState

APPLE_PRODUCTION = "production"
APPLE_SANDBOX = "sandbox"


@dataclass(frozen=True)
class AppleTransaction:
    """Verified Apple transaction (decoded signedTransactionInfo)."""

    transaction_id: str  # Unique per purchase / renewal
    original_transaction_id: str  # First transaction in subscription chain
    product_id: str
    bundle_id: str
    environment: str  # "Production" or "Sandbox"
    raw: str = ""  # The signed JWS as received

    type: str = ""  # "Auto-Renewable Subscription", "Consumable", ...
    quantity: int = 1
    purchase_date: datetime | None = None
    expires_date: datetime | None = None
    revocation_date: datetime | None = None
    revocation_reason: int | None = None
    app_account_token: str | None = None

    @property
    def canonical_state(self) -> CanonicalPurchaseState:
        if self.revocation_date is not None:
            return CanonicalPurchaseState.REVOKED
        if not self.transaction_id:
            return CanonicalPurchaseState.UNKNOWN
        return CanonicalPurchaseState.PURCHASED

    def is_sandbox(self) -> bool:
        """Check if this is a sandbox (test) transaction."""
        return self.environment.lower() == APPLE_SANDBOX


@dataclass(frozen=True)
class AppleRenewalInfo:
    """Subscription renewal information (decoded signedRenewalInfo)."""

    original_transaction_id: str
    auto_renew_product_id: str = ""
    environment: str = ""
    signed_date: int = 0  # Milliseconds since epoch
    bundle_id: str = ""
    auto_renew_status: int = 0  # 0: off, 1: on
    raw: str = ""

    def as_transaction(self) -> AppleTransaction:
        """
        Synthesize a transaction for notifications that only carry renewal info.

        The id is derived from signedDate so that each renewal event gets its
        own idempotency key.
        """
        transaction_id = self.original_transaction_id
        if self.signed_date > 0:
            transaction_id = f"renewal:{self.original_transaction_id}:{self.signed_date}"
        return AppleTransaction(
            transaction_id=transaction_id,
            original_transaction_id=self.original_transaction_id,
            product_id=self.auto_renew_product_id,
            bundle_id=self.bundle_id,
            environment=self.environment,
            raw=self.raw,
        )


@dataclass(frozen=True)
class AppleNotification:
    """App Store Server Notification V2 (decoded signedPayload).

    The nested signed transaction / renewal info are kept as JWS strings and
    verified separately.
    """

    notification_type: str  # e.g. "DID_RENEW", "REFUND"
    subtype: str  # e.g. "INITIAL_BUY", "VOLUNTARY"; empty when absent
    notification_uuid: str
    version: str
    signed_date: int
    bundle_id: str
    environment: str
    signed_transaction_info: str = ""
    signed_renewal_info: str = ""
    raw: str = ""


@dataclass(frozen=True)
class AppleStoreKitConfig:
    """Configuration for App Store Server API access."""

    key_id: str  # Key ID from App Store Connect
    issuer_id: str  # Issuer ID from App Store Connect
    private_key: str  # Private key (.p8 contents, PEM or base64 of PEM)
    bundle_id: str  # App bundle ID; empty disables the bundle check
    environment: str = APPLE_PRODUCTION  # Environment tried first

    @property
    def environments(self) -> tuple[str, ...]:
        """Environments to query, in order."""
        if self.environment.lower() == APPLE_SANDBOX:
            return (APPLE_SANDBOX, APPLE_PRODUCTION)
        return (APPLE_PRODUCTION, APPLE_SANDBOX)

    def __post_init__(self) -> None:
        """Validate configuration fields."""
        if not self.key_id:
            raise ValueError("StoreKit key_id is required")
        if not self.issuer_id:
            raise ValueError("StoreKit issuer_id is required")
        if not self.private_key:
            raise ValueError("StoreKit private_key is required")
        if self.environment.lower() not in (APPLE_PRODUCTION, APPLE_SANDBOX):
            raise ValueError("Environment must be 'production' or 'sandbox'")


def api_base_url(environment: str) -> str:
    """Get the App Store Server API base URL for an environment."""
    if environment.lower() == APPLE_SANDBOX:
        return "https://api.storekit-sandbox.itunes.apple.com"
    return "https://api.storekit.itunes.apple.com"
