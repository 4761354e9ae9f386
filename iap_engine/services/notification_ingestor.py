"""
Notification Ingestor - Vendor webhooks to entitlement changes.

Handles App Store Server Notifications V2 and Google Play Real-Time Developer
Notifications delivered over Pub/Sub push. Payloads are classified by probing
their shape; purchases are found again through the receipt store, and a
notification for a purchase we never processed is acknowledged and dropped.

Vendors retry deliveries that do not get a 2xx, so every outcome short of an
unauthenticated payload is reported as a result instead of an exception.
"""

import base64
import binascii
import json
from collections.abc import Iterable
from enum import Enum
from typing import Any

from structlog import get_logger

from iap_engine.exceptions import (
    IAPError,
    ReceiptNotFoundError,
    SignatureInvalidError,
    VerificationFailedError,
    WebhookVerificationError,
)
from iap_engine.models.apple import AppleNotification, AppleTransaction
from iap_engine.models.domain import CanonicalPurchaseState, EntitlementTarget, StoredReceipt, Vendor
from iap_engine.models.notifications import (
    AppleNotificationEnvelope,
    GoogleOneTimeRTDN,
    GoogleSubscriptionRTDN,
    InboundNotification,
    IngestResult,
    IngestStatus,
    UnrecognizedNotification,
)
from iap_engine.observability.logging import token_preview
from iap_engine.observability.metrics import metrics
from iap_engine.services.apple_signature import AppleSignatureVerifier
from iap_engine.services.purchase_processor import PurchaseProcessor

logger = get_logger(__name__)

DEFAULT_REVOKE_NOTIFICATION_TYPES = frozenset({3, 12, 13})


class AppleNotificationAction(str, Enum):
    """What an App Store notification means for the entitlement."""

    GRANT = "grant"
    REVOKE = "revoke"
    IGNORE = "ignore"


APPLE_GRANT_TYPES = frozenset(
    {
        "SUBSCRIBED",
        "INITIAL_BUY",
        "DID_RENEW",
        "DID_RECOVER",
        "INTERACTIVE_RENEWAL",
        "REFUND_REVERSED",
        "OFFER_REDEEMED",
        "ONE_TIME_CHARGE",
    }
)
APPLE_REVOKE_TYPES = frozenset({"REVOKE", "REFUND"})
APPLE_IGNORE_TYPES = frozenset(
    {
        "DID_FAIL_TO_RENEW",
        "EXPIRED",
        "GRACE_PERIOD_EXPIRED",
        "BILLING_RETRY",
        "PRICE_INCREASE",
        "PRICE_INCREASE_CONSENT",
        "DID_CHANGE_RENEWAL_STATUS",
        "DID_CHANGE_RENEWAL_PREF",
        "CONSUMPTION_REQUEST",
        "REFUND_DECLINED",
        "TEST",
    }
)


def classify_apple_notification(notification_type: str, subtype: str = "") -> AppleNotificationAction:
    """Map an App Store notification type / subtype to an action."""
    notification_type = notification_type.strip().upper()
    if notification_type in APPLE_GRANT_TYPES:
        return AppleNotificationAction.GRANT
    if notification_type in APPLE_REVOKE_TYPES:
        return AppleNotificationAction.REVOKE
    if notification_type in APPLE_IGNORE_TYPES:
        return AppleNotificationAction.IGNORE
    if subtype.strip().upper() == "VOLUNTARY":
        return AppleNotificationAction.REVOKE
    return AppleNotificationAction.GRANT


def parse_notification(raw: bytes | str) -> InboundNotification:
    """
    Classify a webhook body by its shape.

    Raises:
        WebhookVerificationError: If the body is not JSON, the Pub/Sub data is
            not base64 JSON, or the shape is not a known webhook
    """
    try:
        body = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise WebhookVerificationError("Invalid JSON payload") from exc
    if not isinstance(body, dict):
        raise WebhookVerificationError("payload must be a JSON object")

    if "signedPayload" in body:
        signed = body.get("signedPayload")
        if not isinstance(signed, str) or not signed.strip():
            raise WebhookVerificationError("No signedPayload in webhook")
        return AppleNotificationEnvelope(signed_payload=signed.strip())

    message = body.get("message")
    if isinstance(message, dict):
        data = message.get("data")
        if not isinstance(data, str) or not data:
            raise WebhookVerificationError("No message data in webhook")
        try:
            decoded = json.loads(base64.b64decode(data, validate=True))
        except (binascii.Error, ValueError) as exc:
            raise WebhookVerificationError("message data is not base64 JSON") from exc
        return _parse_developer_notification(decoded)

    if any(
        key in body
        for key in ("subscriptionNotification", "oneTimeProductNotification", "testNotification")
    ):
        return _parse_developer_notification(body)

    raise WebhookVerificationError("unrecognized webhook payload")


def _parse_developer_notification(notification: Any) -> InboundNotification:
    if not isinstance(notification, dict):
        raise WebhookVerificationError("developer notification must be a JSON object")

    package_name = str(notification.get("packageName") or "").strip()
    try:
        event_time_millis = int(notification.get("eventTimeMillis") or 0)
    except (TypeError, ValueError):
        event_time_millis = 0

    subscription = notification.get("subscriptionNotification")
    if isinstance(subscription, dict):
        token = str(subscription.get("purchaseToken") or "").strip()
        notification_type = _int_or_none(subscription.get("notificationType"))
        if not token or notification_type is None:
            return UnrecognizedNotification(Vendor.GOOGLE, "subscription notification incomplete")
        return GoogleSubscriptionRTDN(
            notification_type=notification_type,
            purchase_token=token,
            subscription_id=str(subscription.get("subscriptionId") or "").strip(),
            package_name=package_name,
            event_time_millis=event_time_millis,
        )

    one_time = notification.get("oneTimeProductNotification")
    if isinstance(one_time, dict):
        token = str(one_time.get("purchaseToken") or "").strip()
        sku = str(one_time.get("sku") or "").strip()
        notification_type = _int_or_none(one_time.get("notificationType"))
        if not token or not sku or notification_type is None:
            return UnrecognizedNotification(Vendor.GOOGLE, "one-time notification incomplete")
        return GoogleOneTimeRTDN(
            notification_type=notification_type,
            purchase_token=token,
            sku=sku,
            package_name=package_name,
            event_time_millis=event_time_millis,
        )

    if "testNotification" in notification:
        return UnrecognizedNotification(Vendor.GOOGLE, "test notification")
    if "voidedPurchaseNotification" in notification:
        return UnrecognizedNotification(Vendor.GOOGLE, "voided purchase notification")
    return UnrecognizedNotification(Vendor.GOOGLE, "no actionable notification")


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class NotificationIngestor:
    """Applies vendor lifecycle events to entitlements."""

    def __init__(
        self,
        processor: PurchaseProcessor,
        apple_verifier: AppleSignatureVerifier | None = None,
        *,
        revoke_notification_types: Iterable[int] = DEFAULT_REVOKE_NOTIFICATION_TYPES,
    ) -> None:
        self.processor = processor
        self.apple_verifier = apple_verifier
        self.revoke_notification_types = frozenset(revoke_notification_types)

    async def ingest(self, raw: bytes | str) -> IngestResult:
        """
        Process one webhook delivery.

        Returns:
            Outcome for the vendor; every result should be answered with 2xx

        Raises:
            WebhookVerificationError: If the payload is unparseable or its
                Apple signature does not verify
            VendorAPIError: If Apple's key set could not be fetched; the
                delivery should be failed so Apple retries it
        """
        notification = parse_notification(raw)

        match notification:
            case AppleNotificationEnvelope():
                result = await self._ingest_apple(notification)
            case GoogleSubscriptionRTDN():
                result = await self._ingest_google_subscription(notification)
            case GoogleOneTimeRTDN():
                result = await self._ingest_google_one_time(notification)
            case UnrecognizedNotification(vendor=vendor, reason=reason):
                logger.info("iap_notification_unrecognized", reason=reason)
                result = IngestResult(IngestStatus.IGNORED, vendor, reason)

        metrics.record_notification(
            result.vendor.value if result.vendor else "unknown", result.status.value
        )
        return result

    # ------------------------------------------------------------------
    # Apple
    # ------------------------------------------------------------------

    async def _ingest_apple(self, envelope: AppleNotificationEnvelope) -> IngestResult:
        if self.apple_verifier is None:
            raise WebhookVerificationError("apple notifications are not configured")

        try:
            notification = await self.apple_verifier.decode_notification(envelope.signed_payload)
        except SignatureInvalidError as exc:
            logger.warning("apple_notification_signature_invalid", error=str(exc))
            raise WebhookVerificationError(str(exc)) from exc
        except VerificationFailedError as exc:
            return IngestResult(IngestStatus.IGNORED, Vendor.APPLE, exc.message)

        action = classify_apple_notification(notification.notification_type, notification.subtype)
        logger.info(
            "apple_notification_received",
            notification_type=notification.notification_type,
            subtype=notification.subtype,
            notification_uuid=notification.notification_uuid,
            action=action.value,
        )
        if action == AppleNotificationAction.IGNORE:
            return IngestResult(IngestStatus.IGNORED, Vendor.APPLE, notification.notification_type)

        try:
            transaction = await self._apple_transaction(self.apple_verifier, notification, action)
        except VerificationFailedError as exc:
            logger.warning("apple_notification_transaction_rejected", error=exc.message)
            return IngestResult(IngestStatus.IGNORED, Vendor.APPLE, exc.message)
        if transaction is None or not transaction.original_transaction_id:
            return IngestResult(IngestStatus.OK, Vendor.APPLE, "no transaction info")

        try:
            stored = await self.processor.store.find_by_original_transaction_id(
                transaction.original_transaction_id
            )
        except ReceiptNotFoundError:
            logger.info(
                "apple_notification_unknown_transaction",
                original_transaction_id=transaction.original_transaction_id,
            )
            return IngestResult(IngestStatus.OK, Vendor.APPLE, "unknown original transaction")

        target = self._stored_target(stored, Vendor.APPLE, transaction.product_id)

        if action == AppleNotificationAction.REVOKE:
            return await self._revoke(Vendor.APPLE, stored.owner_user_id, target)

        if target is None:
            return IngestResult(IngestStatus.OK, Vendor.APPLE, "no target for stored purchase")

        try:
            result = await self.processor.process_apple_transaction(
                stored.owner_user_id, transaction, target=target
            )
        except IAPError as exc:
            logger.error(
                "apple_notification_redrive_failed",
                original_transaction_id=transaction.original_transaction_id,
                user_id=stored.owner_user_id,
                error=str(exc),
            )
            return IngestResult(IngestStatus.ERROR, Vendor.APPLE, str(exc))
        return IngestResult(IngestStatus.PROCESSED, Vendor.APPLE, result.stage.value)

    async def _apple_transaction(
        self,
        verifier: AppleSignatureVerifier,
        notification: AppleNotification,
        action: AppleNotificationAction,
    ) -> AppleTransaction | None:
        """
        Decode the transaction a notification is about.

        Falls back to renewal info when no transaction is attached. For
        revocations the nested transaction is accepted on the strength of the
        verified outer payload when its own signature cannot be checked.
        """
        if notification.signed_transaction_info:
            try:
                return await verifier.decode_transaction(notification.signed_transaction_info)
            except IAPError as exc:
                if action == AppleNotificationAction.REVOKE:
                    logger.warning("apple_revoke_nested_transaction_unverified", error=str(exc))
                    try:
                        return verifier.read_embedded_transaction(
                            notification.signed_transaction_info
                        )
                    except SignatureInvalidError as inner:
                        raise WebhookVerificationError(str(inner)) from inner
                if isinstance(exc, SignatureInvalidError):
                    raise WebhookVerificationError(str(exc)) from exc
                raise

        if notification.signed_renewal_info:
            try:
                renewal = await verifier.decode_renewal_info(notification.signed_renewal_info)
            except SignatureInvalidError as exc:
                raise WebhookVerificationError(str(exc)) from exc
            if not renewal.original_transaction_id:
                return None
            return renewal.as_transaction()

        return None

    # ------------------------------------------------------------------
    # Google
    # ------------------------------------------------------------------

    def _package_mismatch(self, package_name: str) -> bool:
        verifier = self.processor.google_verifier
        return bool(
            verifier is not None and package_name and package_name != verifier.package_name
        )

    async def _find_google_receipt(self, token: str) -> StoredReceipt | None:
        try:
            return await self.processor.store.find_target_by_token(Vendor.GOOGLE, token)
        except ReceiptNotFoundError:
            logger.info("google_notification_unknown_token", token=token_preview(token))
            return None

    async def _ingest_google_subscription(self, rtdn: GoogleSubscriptionRTDN) -> IngestResult:
        if self._package_mismatch(rtdn.package_name):
            return IngestResult(IngestStatus.IGNORED, Vendor.GOOGLE, "package mismatch")

        stored = await self._find_google_receipt(rtdn.purchase_token)
        if stored is None:
            return IngestResult(IngestStatus.OK, Vendor.GOOGLE, "unknown purchase token")
        target = self._stored_target(stored, Vendor.GOOGLE, rtdn.subscription_id)

        logger.info(
            "google_subscription_notification_received",
            notification_type=rtdn.notification_type,
            subscription_id=rtdn.subscription_id,
            user_id=stored.owner_user_id,
        )

        if rtdn.notification_type in self.revoke_notification_types:
            return await self._revoke(Vendor.GOOGLE, stored.owner_user_id, target)

        if target is None:
            return IngestResult(IngestStatus.OK, Vendor.GOOGLE, "no target for stored purchase")

        product_id = rtdn.subscription_id or stored.product_id
        return await self._redrive_google(stored, product_id, rtdn.purchase_token, target)

    async def _ingest_google_one_time(self, rtdn: GoogleOneTimeRTDN) -> IngestResult:
        if self._package_mismatch(rtdn.package_name):
            return IngestResult(IngestStatus.IGNORED, Vendor.GOOGLE, "package mismatch")

        stored = await self._find_google_receipt(rtdn.purchase_token)
        if stored is None:
            return IngestResult(IngestStatus.OK, Vendor.GOOGLE, "unknown purchase token")
        target = self._stored_target(stored, Vendor.GOOGLE, rtdn.sku)
        if target is None:
            return IngestResult(IngestStatus.OK, Vendor.GOOGLE, "no target for stored purchase")

        return await self._redrive_google(stored, rtdn.sku, rtdn.purchase_token, target)

    async def _redrive_google(
        self,
        stored: StoredReceipt,
        product_id: str,
        token: str,
        target: EntitlementTarget,
    ) -> IngestResult:
        """Re-verify with Google and reapply when the purchase is still good."""
        try:
            purchase = await self.processor.fetch_google_purchase(product_id, token, target)
            if purchase.canonical_state != CanonicalPurchaseState.PURCHASED:
                return IngestResult(IngestStatus.OK, Vendor.GOOGLE, f"purchase {purchase.status}")
            result = await self.processor.process_google_purchase(
                stored.owner_user_id, purchase, target
            )
        except IAPError as exc:
            logger.error(
                "google_notification_redrive_failed",
                product_id=product_id,
                user_id=stored.owner_user_id,
                error=str(exc),
            )
            return IngestResult(IngestStatus.ERROR, Vendor.GOOGLE, str(exc))
        return IngestResult(IngestStatus.PROCESSED, Vendor.GOOGLE, result.stage.value)

    # ------------------------------------------------------------------
    # Shared
    # ------------------------------------------------------------------

    def _stored_target(
        self, stored: StoredReceipt, vendor: Vendor, fallback_product_id: str
    ) -> EntitlementTarget | None:
        """Stored target, or the catalog target for rows saved without one."""
        if stored.target is not None:
            return stored.target
        resolver = (
            self.processor.apple_resolver if vendor == Vendor.APPLE else self.processor.google_resolver
        )
        if resolver is None:
            return None
        return resolver.resolve_stored(stored.product_id) or resolver.resolve_stored(
            fallback_product_id
        )

    async def _revoke(
        self, vendor: Vendor, user_id: int, target: EntitlementTarget | None
    ) -> IngestResult:
        if target is None:
            logger.warning("iap_revoke_without_target", vendor=vendor.value, user_id=user_id)
            return IngestResult(IngestStatus.REVOKED, vendor, "no target")
        try:
            expired = await self.processor.applier.revoke(user_id, target)
        except Exception as exc:
            logger.error(
                "iap_revoke_failed",
                vendor=vendor.value,
                user_id=user_id,
                target=target.kind.value,
                error=str(exc),
            )
            return IngestResult(IngestStatus.ERROR, vendor, str(exc))
        return IngestResult(
            IngestStatus.REVOKED,
            vendor,
            "subscription expired" if expired else f"{target.kind.value} left active",
        )
