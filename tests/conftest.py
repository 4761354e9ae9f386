"""
Pytest Configuration and Centralized Fixtures.

Provides reusable fakes and fixtures for testing:
- Apple signing key, published key set, x5c certificate chain and JWS signers
- In-memory receipt store
- Recording collaborators (subscriptions, tops, business seats)
- Mocked androidpublisher resource
- Fully wired purchase processor and notification ingestor
"""

import base64
import os
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from jwt.algorithms import ECAlgorithm

# Set environment variables BEFORE importing engine modules
os.environ.setdefault("LOG_FORMAT", "console")
os.environ.setdefault("METRICS_ENABLED", "true")
os.environ.setdefault("TRACING_ENABLED", "false")

from iap_engine.exceptions import ReceiptAlreadyExistsError, ReceiptNotFoundError
from iap_engine.models.apple import AppleStoreKitConfig
from iap_engine.models.domain import (
    PurchaseReceipt,
    StoredReceipt,
    SubscriptionTarget,
    SubscriptionType,
    Vendor,
)
from iap_engine.services.apple_certificates import (
    APPLE_INTERMEDIATE_MARKER_OID,
    APPLE_LEAF_MARKER_OID,
)
from iap_engine.services.apple_jwks import AppleJWKSCache
from iap_engine.services.apple_signature import AppleSignatureVerifier
from iap_engine.services.appliers import EntitlementApplier
from iap_engine.services.google_play_provider import GoogleReceiptVerifier
from iap_engine.services.notification_ingestor import NotificationIngestor
from iap_engine.services.purchase_processor import PurchaseProcessor
from iap_engine.services.target_resolver import EntitlementTargetResolver

BUNDLE_ID = "com.example.app"
PACKAGE_NAME = "com.example.app"
SIGNING_KID = "test-kid-1"
ALLOWED_LISTING_TYPES = ("service", "ad", "work", "work_ad", "rent", "rent_ad")

CATALOG: dict[str, dict[str, Any]] = {
    "responses10": {"type": "responses", "quantity": 10},
    "service_1m": {"type": "subscription", "subscription_type": "service", "months": 1},
    "rent_3m": {"type": "subscription", "subscription_type": "rent", "months": 3},
    "top7": {"type": "top", "duration_days": 7},
    "seats5": {"type": "business", "seats": 5},
}


# ============================================================================
# Apple keys and JWS
# ============================================================================


@dataclass(frozen=True)
class SigningKey:
    """EC P-256 key pair with its published JWK."""

    kid: str
    private_key: ec.EllipticCurvePrivateKey
    pem: str
    jwk: dict[str, Any]

    def sign(self, payload: dict[str, Any], kid: str | None = None) -> str:
        return jwt.encode(
            payload,
            self.private_key,
            algorithm="ES256",
            headers={"kid": kid or self.kid},
        )


def create_signing_key(kid: str = SIGNING_KID) -> SigningKey:
    """Generate a fresh ES256 key pair."""
    private_key = ec.generate_private_key(ec.SECP256R1())
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")
    jwk = ECAlgorithm.to_jwk(private_key.public_key(), as_dict=True)
    jwk.update({"kid": kid, "alg": "ES256", "use": "sig"})
    return SigningKey(kid=kid, private_key=private_key, pem=pem, jwk=jwk)


@pytest.fixture(scope="session")
def signing_key() -> SigningKey:
    """Key Apple signs payloads with in tests."""
    return create_signing_key()


@pytest.fixture(scope="session")
def jwks_document(signing_key: SigningKey) -> dict[str, Any]:
    """Published key set containing the signing key."""
    return {"keys": [signing_key.jwk]}


# ============================================================================
# Apple certificate chain (x5c)
# ============================================================================

CERT_NOT_BEFORE = datetime(2023, 1, 1, tzinfo=UTC)
CERT_NOT_AFTER = datetime(2030, 1, 1, tzinfo=UTC)
APPLE_MARKER_VALUE = b"\x05\x00"  # DER NULL


def issue_certificate(
    common_name: str,
    public_key: ec.EllipticCurvePublicKey,
    issuer: x509.Certificate | None,
    issuer_key: ec.EllipticCurvePrivateKey,
    *,
    ca: bool,
    marker_oid: x509.ObjectIdentifier | None = None,
    not_after: datetime = CERT_NOT_AFTER,
) -> x509.Certificate:
    """Issue an EC certificate; self-signed when issuer is None."""
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.subject if issuer is not None else subject)
        .public_key(public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(CERT_NOT_BEFORE)
        .not_valid_after(not_after)
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if marker_oid is not None:
        builder = builder.add_extension(
            x509.UnrecognizedExtension(marker_oid, APPLE_MARKER_VALUE), critical=False
        )
    return builder.sign(issuer_key, hashes.SHA256())


@dataclass(frozen=True)
class CertificateChain:
    """Root, intermediate and leaf shaped like Apple's StoreKit signing chain."""

    root: x509.Certificate
    intermediate: x509.Certificate
    leaf: x509.Certificate
    leaf_key: ec.EllipticCurvePrivateKey

    @property
    def x5c(self) -> list[str]:
        return [
            base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")
            for cert in (self.leaf, self.intermediate, self.root)
        ]

    def sign(
        self,
        payload: dict[str, Any],
        x5c: list[str] | None = None,
        key: ec.EllipticCurvePrivateKey | None = None,
    ) -> str:
        return jwt.encode(
            payload,
            key or self.leaf_key,
            algorithm="ES256",
            headers={"x5c": self.x5c if x5c is None else x5c},
        )


def create_certificate_chain(
    *,
    leaf_marker: bool = True,
    leaf_not_after: datetime = CERT_NOT_AFTER,
) -> CertificateChain:
    """Generate a fresh root -> intermediate -> leaf chain."""
    root_key = ec.generate_private_key(ec.SECP256R1())
    intermediate_key = ec.generate_private_key(ec.SECP256R1())
    leaf_key = ec.generate_private_key(ec.SECP256R1())

    root = issue_certificate("Test Root CA", root_key.public_key(), None, root_key, ca=True)
    intermediate = issue_certificate(
        "Test WWDR Intermediate",
        intermediate_key.public_key(),
        root,
        root_key,
        ca=True,
        marker_oid=APPLE_INTERMEDIATE_MARKER_OID,
    )
    leaf = issue_certificate(
        "Test StoreKit Signing",
        leaf_key.public_key(),
        intermediate,
        intermediate_key,
        ca=False,
        marker_oid=APPLE_LEAF_MARKER_OID if leaf_marker else None,
        not_after=leaf_not_after,
    )
    return CertificateChain(root=root, intermediate=intermediate, leaf=leaf, leaf_key=leaf_key)


@pytest.fixture(scope="session")
def certificate_chain() -> CertificateChain:
    return create_certificate_chain()


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingFetcher:
    """JWKS fetcher returning a fixed document and counting calls."""

    def __init__(self, document: dict[str, Any]) -> None:
        self.document = document
        self.calls = 0

    async def __call__(self) -> dict[str, Any]:
        self.calls += 1
        return self.document


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def jwks_fetcher(jwks_document: dict[str, Any]) -> CountingFetcher:
    return CountingFetcher(jwks_document)


@pytest.fixture
def jwks_cache(jwks_fetcher: CountingFetcher, fake_clock: FakeClock) -> AppleJWKSCache:
    """Key-set cache backed by the in-test key set."""
    return AppleJWKSCache(jwks_fetcher, clock=fake_clock)


@pytest.fixture
def apple_config(signing_key: SigningKey) -> AppleStoreKitConfig:
    return AppleStoreKitConfig(
        key_id="API1234567",
        issuer_id="57246542-96fe-1a63-e053-0824d011072a",
        private_key=signing_key.pem,
        bundle_id=BUNDLE_ID,
    )


@pytest.fixture
def apple_verifier(
    jwks_cache: AppleJWKSCache, apple_config: AppleStoreKitConfig
) -> AppleSignatureVerifier:
    return AppleSignatureVerifier(jwks_cache, apple_config, clock=lambda: 1_700_000_000.0)


@pytest.fixture
def x5c_verifier(
    jwks_cache: AppleJWKSCache,
    apple_config: AppleStoreKitConfig,
    certificate_chain: CertificateChain,
) -> AppleSignatureVerifier:
    """Verifier trusting the test root certificate."""
    return AppleSignatureVerifier(
        jwks_cache,
        apple_config,
        trusted_roots=[certificate_chain.root],
        clock=lambda: 1_700_000_000.0,
    )


def transaction_claims(
    transaction_id: str = "2000000000000001",
    original_transaction_id: str = "2000000000000001",
    product_id: str = "service_1m",
    **overrides: Any,
) -> dict[str, Any]:
    """signedTransactionInfo claims as Apple sends them."""
    claims: dict[str, Any] = {
        "transactionId": transaction_id,
        "originalTransactionId": original_transaction_id,
        "productId": product_id,
        "bundleId": BUNDLE_ID,
        "environment": "Production",
        "type": "Auto-Renewable Subscription",
        "quantity": 1,
        "purchaseDate": 1_700_000_000_000,
        "expiresDate": 1_702_592_000_000,
        "signedDate": 1_700_000_000_500,
    }
    claims.update(overrides)
    return claims


def notification_claims(
    notification_type: str,
    subtype: str = "",
    signed_transaction_info: str = "",
    signed_renewal_info: str = "",
    bundle_id: str = BUNDLE_ID,
) -> dict[str, Any]:
    """Notification signedPayload claims."""
    data: dict[str, Any] = {"bundleId": bundle_id, "environment": "Production"}
    if signed_transaction_info:
        data["signedTransactionInfo"] = signed_transaction_info
    if signed_renewal_info:
        data["signedRenewalInfo"] = signed_renewal_info
    claims: dict[str, Any] = {
        "notificationType": notification_type,
        "notificationUUID": "b5f5e3c4-0000-4000-8000-000000000001",
        "version": "2.0",
        "signedDate": 1_700_000_001_000,
        "data": data,
    }
    if subtype:
        claims["subtype"] = subtype
    return claims


# ============================================================================
# Receipt store
# ============================================================================


class InMemoryReceiptStore:
    """ReceiptStore keeping rows in a dict keyed by (vendor, receipt_key)."""

    def __init__(self) -> None:
        self.rows: dict[tuple[Vendor, str], PurchaseReceipt] = {}
        self.save_calls = 0
        self.conflict_on_save = False
        self.fail_delete = False
        self.legacy_keys: set[tuple[Vendor, str]] = set()

    def add(self, receipt: PurchaseReceipt) -> None:
        self.rows[(receipt.vendor, receipt.receipt_key)] = receipt

    def stored(self, receipt: PurchaseReceipt) -> StoredReceipt:
        """Row as read back; keys in legacy_keys come back without a target."""
        legacy = (receipt.vendor, receipt.receipt_key) in self.legacy_keys
        return StoredReceipt(
            vendor=receipt.vendor,
            receipt_key=receipt.receipt_key,
            owner_user_id=receipt.owner_user_id,
            product_id=receipt.product_id,
            target=None if legacy else receipt.target,
            original_transaction_id=receipt.original_transaction_id,
        )

    async def get_owner_by_token(self, vendor: Vendor, receipt_key: str) -> int:
        row = self.rows.get((vendor, receipt_key))
        if row is None:
            raise ReceiptNotFoundError(receipt_key)
        return row.owner_user_id

    async def is_processed(self, vendor: Vendor, receipt_key: str) -> bool:
        return (vendor, receipt_key) in self.rows

    async def save(self, receipt: PurchaseReceipt) -> None:
        self.save_calls += 1
        key = (receipt.vendor, receipt.receipt_key)
        if self.conflict_on_save or key in self.rows:
            raise ReceiptAlreadyExistsError(receipt.vendor.value, receipt.receipt_key)
        self.rows[key] = receipt

    async def delete_by_token(self, vendor: Vendor, receipt_key: str) -> None:
        if self.fail_delete:
            raise RuntimeError("database unavailable")
        if self.rows.pop((vendor, receipt_key), None) is None:
            raise ReceiptNotFoundError(receipt_key)

    async def find_by_original_transaction_id(self, original_transaction_id: str) -> StoredReceipt:
        chain = [
            row
            for row in self.rows.values()
            if row.vendor == Vendor.APPLE and row.original_transaction_id == original_transaction_id
        ]
        if not chain:
            raise ReceiptNotFoundError(original_transaction_id)
        return self.stored(max(chain, key=lambda row: row.processed_at))

    async def find_target_by_token(self, vendor: Vendor, receipt_key: str) -> StoredReceipt:
        row = self.rows.get((vendor, receipt_key))
        if row is None:
            raise ReceiptNotFoundError(receipt_key)
        return self.stored(row)


@pytest.fixture
def receipt_store() -> InMemoryReceiptStore:
    return InMemoryReceiptStore()


# ============================================================================
# Collaborators
# ============================================================================


class RecordingSubscriptions:
    """SubscriptionRepository recording every command."""

    def __init__(self) -> None:
        self.responses_balance: dict[int, int] = {}
        self.extensions: list[tuple[int, SubscriptionType, int]] = []
        self.expired: list[tuple[int, SubscriptionType]] = []
        self.error: BaseException | None = None

    async def add_responses_balance(self, user_id: int, quantity: int) -> None:
        if self.error is not None:
            raise self.error
        self.responses_balance[user_id] = self.responses_balance.get(user_id, 0) + quantity

    async def extend_subscription(
        self, user_id: int, subscription_type: SubscriptionType, months: int
    ) -> None:
        if self.error is not None:
            raise self.error
        self.extensions.append((user_id, subscription_type, months))

    async def force_expire_subscription(
        self, user_id: int, subscription_type: SubscriptionType
    ) -> None:
        if self.error is not None:
            raise self.error
        self.expired.append((user_id, subscription_type))


class RecordingTops:
    """TopService recording activations."""

    def __init__(self) -> None:
        self.activations: list[tuple[int, str, int, int]] = []

    async def activate_top(
        self, user_id: int, listing_type: str, listing_id: int, duration_days: int
    ) -> None:
        self.activations.append((user_id, listing_type, listing_id, duration_days))


class RecordingBusiness:
    """BusinessService recording seat purchases."""

    def __init__(self) -> None:
        self.purchases: list[tuple[int, int, str, str, str]] = []

    async def purchase_seats(
        self, user_id: int, seats: int, provider: str, provider_txn_id: str, state: str
    ) -> None:
        self.purchases.append((user_id, seats, provider, provider_txn_id, state))


@pytest.fixture
def subscriptions() -> RecordingSubscriptions:
    return RecordingSubscriptions()


@pytest.fixture
def tops() -> RecordingTops:
    return RecordingTops()


@pytest.fixture
def business() -> RecordingBusiness:
    return RecordingBusiness()


@pytest.fixture
def applier(
    subscriptions: RecordingSubscriptions, tops: RecordingTops, business: RecordingBusiness
) -> EntitlementApplier:
    return EntitlementApplier(subscriptions, tops, business)


# ============================================================================
# Google Play
# ============================================================================


@pytest.fixture
def google_service() -> MagicMock:
    """
    Mocked androidpublisher resource.

    Configure responses through the returned request mocks, e.g.
    service.purchases().products().get().execute.return_value = {...}
    """
    service = MagicMock()
    purchases = service.purchases.return_value
    purchases.products.return_value.get.return_value.execute.return_value = {
        "purchaseState": 0,
        "orderId": "GPA.1234-5678-9012-34567",
        "acknowledgementState": 0,
        "consumptionState": 0,
    }
    purchases.products.return_value.acknowledge.return_value.execute.return_value = {}
    purchases.products.return_value.consume.return_value.execute.return_value = {}
    purchases.subscriptions.return_value.acknowledge.return_value.execute.return_value = {}
    purchases.subscriptionsv2.return_value.get.return_value.execute.return_value = (
        subscription_response()
    )
    return service


def subscription_response(
    expiry_times: tuple[str, ...] = ("2099-01-01T00:00:00.000Z",),
    state: str = "SUBSCRIPTION_STATE_ACTIVE",
    product_id: str = "service_1m",
    acknowledged: bool = False,
) -> dict[str, Any]:
    """subscriptionsv2.get response body."""
    return {
        "subscriptionState": state,
        "acknowledgementState": (
            "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"
            if acknowledged
            else "ACKNOWLEDGEMENT_STATE_PENDING"
        ),
        "latestOrderId": "GPA.0000-0000-0000-00000",
        "lineItems": [
            {
                "productId": product_id,
                "expiryTime": expiry,
                "latestSuccessfulOrderId": "GPA.1111-2222-3333-44444",
            }
            for expiry in expiry_times
        ],
    }


def fixed_now() -> datetime:
    return datetime(2025, 1, 8, 12, 0, tzinfo=UTC)


@pytest.fixture
def google_verifier(google_service: MagicMock) -> GoogleReceiptVerifier:
    return GoogleReceiptVerifier(PACKAGE_NAME, google_service, clock=fixed_now)


# ============================================================================
# Processor and ingestor
# ============================================================================


@pytest.fixture
def resolver() -> EntitlementTargetResolver:
    return EntitlementTargetResolver.from_json(CATALOG, ALLOWED_LISTING_TYPES)


@pytest.fixture
def apple_fetcher() -> MagicMock:
    """Stand-in for AppleTransactionFetcher; set verify_transaction per test."""
    fetcher = MagicMock()
    fetcher.verify_transaction = AsyncMock()
    return fetcher


@pytest.fixture
def processor(
    receipt_store: InMemoryReceiptStore,
    applier: EntitlementApplier,
    resolver: EntitlementTargetResolver,
    apple_fetcher: MagicMock,
    google_verifier: GoogleReceiptVerifier,
) -> PurchaseProcessor:
    return PurchaseProcessor(
        receipt_store,
        applier,
        apple_resolver=resolver,
        google_resolver=resolver,
        apple_fetcher=apple_fetcher,
        google_verifier=google_verifier,
    )


@pytest.fixture
def ingestor(
    processor: PurchaseProcessor, apple_verifier: AppleSignatureVerifier
) -> NotificationIngestor:
    return NotificationIngestor(processor, apple_verifier)


@pytest.fixture
def make_receipt() -> Callable[..., PurchaseReceipt]:
    """Factory for stored receipts."""

    def _make(
        vendor: Vendor = Vendor.GOOGLE,
        receipt_key: str = "google-token-0001",
        owner_user_id: int = 7,
        product_id: str = "service_1m",
        target: Any = None,
        original_transaction_id: str | None = None,
        processed_at: datetime | None = None,
    ) -> PurchaseReceipt:
        return PurchaseReceipt(
            vendor=vendor,
            receipt_key=receipt_key,
            owner_user_id=owner_user_id,
            product_id=product_id,
            target=target or SubscriptionTarget(SubscriptionType.SERVICE, 1),
            original_transaction_id=original_transaction_id,
            processed_at=processed_at or fixed_now(),
        )

    return _make
