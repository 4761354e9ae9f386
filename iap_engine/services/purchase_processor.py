"""
Purchase Processor - At-most-once application of verified purchases.

NO DICTIONARIES - Receipts, targets and results are strongly typed.

Every verified purchase goes through the same pipeline:

    ownership check -> idempotency check -> persist receipt -> apply -> acknowledge

The receipt row is written BEFORE the entitlement is applied, so a duplicate
client retry or webhook racing this one hits the store's uniqueness
constraint instead of applying twice. If applying fails the row is deleted
again so the purchase can be retried.
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import replace
from typing import Any

from structlog import get_logger

from iap_engine.exceptions import (
    ApplyFailedError,
    OwnershipConflictError,
    ReceiptAlreadyExistsError,
    ReceiptNotFoundError,
    VerificationFailedError,
)
from iap_engine.models.apple import AppleTransaction
from iap_engine.models.domain import (
    BusinessTarget,
    CanonicalPurchaseState,
    EntitlementTarget,
    ProcessingStage,
    ProcessResult,
    PurchaseReceipt,
    ResponsesTarget,
    SubscriptionTarget,
    Vendor,
)
from iap_engine.models.google_play import GooglePurchase
from iap_engine.observability.logging import token_preview
from iap_engine.observability.metrics import metrics
from iap_engine.observability.tracing import add_span_attributes, trace_operation
from iap_engine.services.apple_transactions import AppleTransactionFetcher
from iap_engine.services.appliers import EntitlementApplier
from iap_engine.services.google_play_provider import GoogleReceiptVerifier
from iap_engine.services.receipt_store import ReceiptStore
from iap_engine.services.target_resolver import ClientTargetBinding, EntitlementTargetResolver

logger = get_logger(__name__)

Acknowledger = Callable[[], Awaitable[None]]
ClientBinding = ClientTargetBinding | Mapping[str, Any] | None


class PurchaseProcessor:
    """
    Verifies purchases with their vendor and applies them exactly once.

    Vendor components are optional; using a vendor that was not configured
    raises VerificationFailedError.
    """

    def __init__(
        self,
        store: ReceiptStore,
        applier: EntitlementApplier,
        *,
        apple_resolver: EntitlementTargetResolver | None = None,
        google_resolver: EntitlementTargetResolver | None = None,
        apple_fetcher: AppleTransactionFetcher | None = None,
        google_verifier: GoogleReceiptVerifier | None = None,
    ) -> None:
        self.store = store
        self.applier = applier
        self.apple_resolver = apple_resolver
        self.google_resolver = google_resolver
        self.apple_fetcher = apple_fetcher
        self.google_verifier = google_verifier

    # ------------------------------------------------------------------
    # Core pipeline
    # ------------------------------------------------------------------

    async def process(
        self,
        user_id: int,
        receipt: PurchaseReceipt,
        target: EntitlementTarget,
        acknowledge: Acknowledger | None = None,
    ) -> ProcessResult:
        """
        Run a verified purchase through ownership, idempotency and apply.

        Args:
            user_id: Account the purchase is credited to
            receipt: Verified receipt; its owner and target are taken from
                user_id and target
            target: Entitlement to apply
            acknowledge: Vendor acknowledgement, run only after a successful
                apply; its failures are logged and swallowed

        Returns:
            APPLIED, or ALREADY_PROCESSED for a receipt seen before

        Raises:
            OwnershipConflictError: If the receipt belongs to another account
            ApplyFailedError: If applying failed (the receipt was rolled back)
        """
        receipt = replace(receipt, owner_user_id=user_id, target=target)
        vendor = receipt.vendor

        with trace_operation(
            "iap_process",
            vendor=vendor.value,
            user_id=user_id,
            product_id=receipt.product_id,
            target=target.kind.value,
        ) as span:
            await self._check_ownership(user_id, receipt)

            if await self.store.is_processed(vendor, receipt.receipt_key):
                return self._already_processed(receipt, target)

            try:
                await self.store.save(receipt)
            except ReceiptAlreadyExistsError:
                return self._already_processed(receipt, target)

            try:
                await self.applier.apply(user_id, target, receipt)
            except BaseException as exc:
                # Cancellation must not strand the row; the delete runs shielded
                rollback_error = await asyncio.shield(self._rollback(receipt))
                metrics.record_purchase(vendor.value, ProcessingStage.ROLLED_BACK.value)
                add_span_attributes(span, stage=ProcessingStage.ROLLED_BACK.value)
                if isinstance(exc, ApplyFailedError):
                    raise ApplyFailedError(
                        exc.target_kind, exc.message, rollback_error=rollback_error
                    ) from exc
                raise

            metrics.record_purchase(vendor.value, ProcessingStage.APPLIED.value)
            add_span_attributes(span, stage=ProcessingStage.APPLIED.value)
            logger.info(
                "iap_purchase_applied",
                vendor=vendor.value,
                user_id=user_id,
                product_id=receipt.product_id,
                target=target.kind.value,
            )

            if acknowledge is not None:
                try:
                    await acknowledge()
                except Exception as exc:
                    logger.warning(
                        "iap_acknowledge_failed",
                        vendor=vendor.value,
                        product_id=receipt.product_id,
                        error=str(exc),
                    )

            return ProcessResult(
                vendor=vendor,
                receipt_key=receipt.receipt_key,
                stage=ProcessingStage.APPLIED,
                target=target,
            )

    async def _check_ownership(self, user_id: int, receipt: PurchaseReceipt) -> None:
        owners: list[int] = []
        try:
            owners.append(await self.store.get_owner_by_token(receipt.vendor, receipt.receipt_key))
        except ReceiptNotFoundError:
            pass

        if receipt.vendor == Vendor.APPLE and receipt.original_transaction_id:
            try:
                chain = await self.store.find_by_original_transaction_id(
                    receipt.original_transaction_id
                )
                owners.append(chain.owner_user_id)
            except ReceiptNotFoundError:
                pass

        for owner in owners:
            if owner != user_id:
                logger.warning(
                    "iap_ownership_conflict",
                    vendor=receipt.vendor.value,
                    user_id=user_id,
                    owner_user_id=owner,
                    product_id=receipt.product_id,
                )
                metrics.record_purchase(receipt.vendor.value, "ownership_conflict")
                raise OwnershipConflictError(
                    receipt.vendor.value, receipt.receipt_key, owner, user_id
                )

    def _already_processed(
        self, receipt: PurchaseReceipt, target: EntitlementTarget
    ) -> ProcessResult:
        logger.info(
            "iap_purchase_already_processed",
            vendor=receipt.vendor.value,
            user_id=receipt.owner_user_id,
            product_id=receipt.product_id,
        )
        metrics.record_purchase(receipt.vendor.value, ProcessingStage.ALREADY_PROCESSED.value)
        return ProcessResult(
            vendor=receipt.vendor,
            receipt_key=receipt.receipt_key,
            stage=ProcessingStage.ALREADY_PROCESSED,
            target=target,
        )

    async def _rollback(self, receipt: PurchaseReceipt) -> Exception | None:
        """Delete the receipt written for a failed apply."""
        try:
            await self.store.delete_by_token(receipt.vendor, receipt.receipt_key)
        except Exception as exc:
            logger.error(
                "iap_receipt_rollback_failed",
                vendor=receipt.vendor.value,
                user_id=receipt.owner_user_id,
                product_id=receipt.product_id,
                error=str(exc),
            )
            return exc
        logger.warning(
            "iap_receipt_rolled_back",
            vendor=receipt.vendor.value,
            user_id=receipt.owner_user_id,
            product_id=receipt.product_id,
        )
        return None

    # ------------------------------------------------------------------
    # Apple
    # ------------------------------------------------------------------

    async def verify_apple_purchase(
        self,
        user_id: int,
        transaction_id: str,
        client_binding: ClientBinding = None,
    ) -> ProcessResult:
        """
        Verify an App Store transaction reported by the client and apply it.

        Raises:
            VerificationFailedError: If Apple does not confirm the purchase
            UnsupportedProductError: If the product is not in the catalog
            InvalidTargetError: If a boost binding is invalid
            OwnershipConflictError: If the transaction belongs to another account
            ApplyFailedError: If applying failed
        """
        if self.apple_fetcher is None or self.apple_resolver is None:
            raise VerificationFailedError("apple in-app purchases are not configured")

        transaction = await self.apple_fetcher.verify_transaction(transaction_id)
        return await self.process_apple_transaction(
            user_id, transaction, client_binding=client_binding
        )

    async def process_apple_transaction(
        self,
        user_id: int,
        transaction: AppleTransaction,
        target: EntitlementTarget | None = None,
        client_binding: ClientBinding = None,
    ) -> ProcessResult:
        """Apply an already verified Apple transaction; target is resolved when omitted."""
        state = transaction.canonical_state
        if state != CanonicalPurchaseState.PURCHASED:
            metrics.record_purchase(Vendor.APPLE.value, "not_purchased")
            raise VerificationFailedError(f"transaction is {state.value}")

        if target is None:
            if self.apple_resolver is None:
                raise VerificationFailedError("apple in-app purchases are not configured")
            target = self.apple_resolver.resolve(transaction.product_id, client_binding)

        receipt = PurchaseReceipt(
            vendor=Vendor.APPLE,
            receipt_key=transaction.transaction_id,
            owner_user_id=user_id,
            product_id=transaction.product_id,
            target=target,
            raw_payload=transaction.raw,
            original_transaction_id=transaction.original_transaction_id or None,
            environment=transaction.environment,
        )
        return await self.process(user_id, receipt, target)

    # ------------------------------------------------------------------
    # Google
    # ------------------------------------------------------------------

    async def verify_google_purchase(
        self,
        user_id: int,
        product_id: str,
        token: str,
        client_binding: ClientBinding = None,
    ) -> ProcessResult:
        """
        Verify a Google Play purchase token and apply it.

        The target is resolved before Google is called, so bad input never
        costs a vendor round trip.

        Raises:
            UnsupportedProductError: If the product is not in the catalog
            InvalidTargetError: If a boost binding is invalid
            VerificationFailedError: If Google does not confirm the purchase
            OwnershipConflictError: If the token belongs to another account
            ApplyFailedError: If applying failed
        """
        if self.google_verifier is None or self.google_resolver is None:
            raise VerificationFailedError("google play purchases are not configured")

        target = self.google_resolver.resolve(product_id, client_binding)
        logger.info(
            "iap_google_purchase_received",
            user_id=user_id,
            product_id=product_id,
            target=target.kind.value,
            token=token_preview(token),
        )
        purchase = await self.fetch_google_purchase(product_id, token, target)
        return await self.process_google_purchase(user_id, purchase, target)

    async def fetch_google_purchase(
        self, product_id: str, token: str, target: EntitlementTarget
    ) -> GooglePurchase:
        """Verify with the API matching the target: subscriptions or products."""
        if self.google_verifier is None:
            raise VerificationFailedError("google play purchases are not configured")
        if isinstance(target, SubscriptionTarget | BusinessTarget):
            return await self.google_verifier.verify_subscription(token, product_id)
        return await self.google_verifier.verify_product(product_id, token)

    async def process_google_purchase(
        self,
        user_id: int,
        purchase: GooglePurchase,
        target: EntitlementTarget,
    ) -> ProcessResult:
        """Apply an already verified Google purchase, then acknowledge it."""
        state = purchase.canonical_state
        if state == CanonicalPurchaseState.PENDING:
            metrics.record_purchase(Vendor.GOOGLE.value, "pending")
            raise VerificationFailedError("payment is pending")
        if state != CanonicalPurchaseState.PURCHASED:
            metrics.record_purchase(Vendor.GOOGLE.value, "not_purchased")
            raise VerificationFailedError(f"purchase is not active ({purchase.status})")

        receipt = PurchaseReceipt(
            vendor=Vendor.GOOGLE,
            receipt_key=purchase.purchase_token,
            owner_user_id=user_id,
            product_id=purchase.product_id,
            target=target,
            raw_payload=purchase.raw,
            order_id=purchase.order_id,
        )

        async def acknowledge() -> None:
            await self._acknowledge_google(purchase, target)

        return await self.process(user_id, receipt, target, acknowledge=acknowledge)

    async def _acknowledge_google(self, purchase: GooglePurchase, target: EntitlementTarget) -> None:
        verifier = self.google_verifier
        if verifier is None:
            return
        token = purchase.purchase_token
        if purchase.is_subscription():
            if not purchase.acknowledged:
                await verifier.acknowledge_subscription(purchase.product_id, token)
        elif isinstance(target, ResponsesTarget):
            if not purchase.consumed:
                await verifier.consume_product(purchase.product_id, token)
        elif not purchase.acknowledged:
            await verifier.acknowledge_product(purchase.product_id, token)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def verify_purchase(
        self,
        user_id: int,
        vendor: Vendor | str,
        product_id: str,
        token: str,
        client_binding: ClientBinding = None,
    ) -> ProcessResult:
        """
        Verify and apply a purchase reported by a client.

        For Apple, token is the transaction id and the product comes from the
        verified transaction; for Google, token is the purchase token.
        """
        try:
            vendor = Vendor(vendor)
        except ValueError as e:
            raise VerificationFailedError(f"unsupported vendor: {vendor!r}") from e

        if vendor == Vendor.APPLE:
            return await self.verify_apple_purchase(user_id, token, client_binding)
        return await self.verify_google_purchase(user_id, product_id, token, client_binding)
