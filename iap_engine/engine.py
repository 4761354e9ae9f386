"""
IAP Engine - Wiring facade for the two inbound operations.

    engine = IAPEngine.from_settings(store, subscriptions=repo, tops=tops, business=business)
    result = await engine.verify_purchase(user_id, "google", product_id, token)
    outcome = await engine.ingest_notification(request_body)

The host owns HTTP framing, authentication and timeouts; wrap calls in
asyncio.timeout() to bound the whole vendor + store chain.
"""

from collections.abc import Mapping
from typing import Any

from structlog import get_logger

from iap_engine.config import Settings, get_settings
from iap_engine.models.apple import AppleStoreKitConfig
from iap_engine.models.domain import ProcessResult, Vendor
from iap_engine.models.notifications import IngestResult
from iap_engine.observability.logging import log_context
from iap_engine.services.apple_certificates import load_root_certificates
from iap_engine.services.apple_jwks import AppleJWKSCache
from iap_engine.services.apple_signature import AppleSignatureVerifier
from iap_engine.services.apple_transactions import AppleTransactionFetcher
from iap_engine.services.appliers import (
    BusinessService,
    EntitlementApplier,
    SubscriptionRepository,
    TopService,
)
from iap_engine.services.google_play_provider import GoogleReceiptVerifier
from iap_engine.services.notification_ingestor import NotificationIngestor
from iap_engine.services.purchase_processor import PurchaseProcessor
from iap_engine.services.receipt_store import ReceiptStore
from iap_engine.services.target_resolver import ClientTargetBinding, EntitlementTargetResolver

logger = get_logger(__name__)


class IAPEngine:
    """Entry point hosts mount behind their purchase and webhook handlers."""

    def __init__(self, processor: PurchaseProcessor, ingestor: NotificationIngestor) -> None:
        self.processor = processor
        self.ingestor = ingestor

    @classmethod
    def from_settings(
        cls,
        store: ReceiptStore,
        subscriptions: SubscriptionRepository | None = None,
        tops: TopService | None = None,
        business: BusinessService | None = None,
        *,
        jwks_cache: AppleJWKSCache | None = None,
        google_service: Any = None,
        settings: Settings | None = None,
    ) -> "IAPEngine":
        """
        Build the engine from application settings.

        Args:
            store: Receipt store (e.g. SqlReceiptStore bound to a session)
            subscriptions: Subscription / response balance repository
            tops: Listing promotion service
            business: Seat licensing service
            jwks_cache: Shared Apple key-set cache; pass one long-lived
                instance when building an engine per request
            google_service: Prebuilt androidpublisher resource
            settings: Defaults to the global settings
        """
        settings = settings or get_settings()
        allowed_listing_types = settings.allowed_top_listing_types

        apple_resolver = EntitlementTargetResolver.from_json(
            settings.apple_iap_products, allowed_listing_types
        )
        google_resolver = EntitlementTargetResolver.from_json(
            settings.google_iap_products, allowed_listing_types
        )

        if jwks_cache is None:
            jwks_cache = AppleJWKSCache(
                url=settings.apple_jwks_url,
                ttl_seconds=settings.apple_jwks_ttl_seconds,
                refresh_margin_seconds=settings.apple_jwks_refresh_margin_seconds,
                timeout_seconds=settings.apple_api_timeout_seconds,
            )

        apple_config: AppleStoreKitConfig | None = None
        if settings.apple_configured:
            apple_config = AppleStoreKitConfig(
                key_id=settings.apple_iap_key_id.strip(),
                issuer_id=settings.apple_iap_issuer_id.strip(),
                private_key=settings.apple_iap_private_key,
                bundle_id=settings.apple_iap_bundle_id.strip(),
                environment=settings.apple_iap_environment.lower(),
            )
        trusted_roots = load_root_certificates(settings.apple_root_certificate_paths)
        apple_verifier = AppleSignatureVerifier(
            jwks_cache,
            apple_config,
            bundle_id=settings.apple_iap_bundle_id,
            trusted_roots=trusted_roots,
        )
        apple_fetcher = (
            AppleTransactionFetcher(
                apple_config,
                apple_verifier,
                timeout_seconds=settings.apple_api_timeout_seconds,
            )
            if apple_config
            else None
        )

        google_verifier: GoogleReceiptVerifier | None = None
        if settings.google_configured:
            google_verifier = GoogleReceiptVerifier(
                settings.google_play_package_name,
                google_service,
                service_account_json=settings.google_play_service_account_json,
            )

        processor = PurchaseProcessor(
            store,
            EntitlementApplier(subscriptions, tops, business),
            apple_resolver=apple_resolver,
            google_resolver=google_resolver,
            apple_fetcher=apple_fetcher,
            google_verifier=google_verifier,
        )
        ingestor = NotificationIngestor(
            processor,
            apple_verifier,
            revoke_notification_types=settings.revoke_notification_types,
        )

        logger.info(
            "iap_engine_initialized",
            apple_enabled=apple_fetcher is not None,
            apple_root_certificates=len(trusted_roots),
            google_enabled=google_verifier is not None,
            apple_products=len(apple_resolver.catalog),
            google_products=len(google_resolver.catalog),
        )
        return cls(processor, ingestor)

    async def verify_purchase(
        self,
        user_id: int,
        vendor: Vendor | str,
        product_id: str,
        token: str,
        client_binding: ClientTargetBinding | Mapping[str, Any] | None = None,
    ) -> ProcessResult:
        """Verify a client-reported purchase and apply it at most once."""
        with log_context(vendor=str(getattr(vendor, "value", vendor)), user_id=user_id):
            return await self.processor.verify_purchase(
                user_id, vendor, product_id, token, client_binding
            )

    async def ingest_notification(self, raw_payload: bytes | str) -> IngestResult:
        """Process one vendor webhook delivery."""
        return await self.ingestor.ingest(raw_payload)
