"""
Google Play Receipt Verifier.

NO DICTIONARIES - Vendor responses are normalized into GooglePurchase.

Uses the Android Publisher API v3: purchases.products for one-time products
and purchases.subscriptionsv2 for subscriptions. The client library is
blocking, so every call runs in a worker thread.
"""

import asyncio
import base64
import binascii
import json
import os
import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from structlog import get_logger

from iap_engine.exceptions import VendorAPIError, VerificationFailedError
from iap_engine.models.google_play import (
    KIND_PRODUCT,
    KIND_SUBSCRIPTION,
    STATUS_ACTIVE,
    STATUS_CANCELED,
    STATUS_EXPIRED,
    STATUS_PENDING,
    STATUS_PURCHASED,
    STATUS_UNKNOWN,
    GooglePlayConfig,
    GooglePurchase,
)
from iap_engine.observability.logging import token_preview
from iap_engine.observability.tracing import vendor_call_span

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"

SUBSCRIPTION_STATE_PENDING = "SUBSCRIPTION_STATE_PENDING"
SUBSCRIPTION_STATE_CANCELED = "SUBSCRIPTION_STATE_CANCELED"
SUBSCRIPTION_STATE_EXPIRED = "SUBSCRIPTION_STATE_EXPIRED"
ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED = "ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED"

# products.get purchaseState: 0 purchased, 1 canceled, 2 pending
_PRODUCT_STATUS = {0: STATUS_PURCHASED, 1: STATUS_CANCELED, 2: STATUS_PENDING}

_RFC3339_FRACTION = re.compile(r"\.(\d+)")


def parse_rfc3339(value: str | None) -> datetime | None:
    """
    Parse an RFC 3339 timestamp as returned by the Publisher API.

    Google sends up to nine fractional digits; datetime accepts six.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _RFC3339_FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        logger.warning("google_play_invalid_timestamp", value=value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class LineItemSummary:
    """Reduction of a subscriptionsv2 lineItems list."""

    active: bool
    latest_expiry: datetime | None
    product_id: str
    order_id: str


def summarize_line_items(line_items: Iterable[Mapping[str, Any]], now: datetime) -> LineItemSummary:
    """
    Reduce line items to one entitlement reading.

    The subscription is active when ANY line item expires after now. Product
    and order ids come from the first line item that carries them.
    """
    active = False
    latest_expiry: datetime | None = None
    product_id = ""
    order_id = ""
    for item in line_items:
        expiry = parse_rfc3339(item.get("expiryTime"))
        if expiry is not None:
            if expiry > now:
                active = True
            if latest_expiry is None or expiry > latest_expiry:
                latest_expiry = expiry
        if not product_id:
            product_id = str(item.get("productId") or "").strip()
        if not order_id:
            order_id = str(item.get("latestSuccessfulOrderId") or "").strip()
    return LineItemSummary(
        active=active,
        latest_expiry=latest_expiry,
        product_id=product_id,
        order_id=order_id,
    )


def load_service_account_info(value: str) -> dict[str, Any]:
    """
    Load service account credentials from raw JSON, base64 JSON or a file path.

    Raises:
        ValueError: If the value cannot be read as service account JSON
    """
    value = value.strip()
    if value.startswith("{"):
        text = value
    elif os.path.isfile(value):
        with open(value, encoding="utf-8") as f:
            text = f.read()
    else:
        try:
            text = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise ValueError("service account JSON is not JSON, base64 or a file path") from e
    try:
        info = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid service account JSON: {e}") from e
    if not isinstance(info, dict):
        raise ValueError("service account JSON must be an object")
    return info


class GoogleReceiptVerifier:
    """
    Google Play purchase verification, acknowledgement and consumption.

    Acknowledge and consume are only ever called after the entitlement has
    been applied; Google refunds purchases left unacknowledged for three days.
    """

    def __init__(
        self,
        package_name: str,
        service: Any = None,
        *,
        service_account_json: str = "",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the verifier.

        Args:
            package_name: Android package name
            service: Prebuilt androidpublisher resource; built from
                service_account_json when omitted
            service_account_json: Raw JSON, base64 JSON or path to the key file
            clock: Returns the current UTC time
        """
        self.package_name = package_name.strip()
        if service is None:
            credentials = service_account.Credentials.from_service_account_info(  # type: ignore[no-untyped-call]
                load_service_account_info(service_account_json),
                scopes=[ANDROID_PUBLISHER_SCOPE],
            )
            service = build(
                "androidpublisher", "v3", credentials=credentials, cache_discovery=False
            )
        self.service = service
        self._clock = clock or (lambda: datetime.now(UTC))

        logger.info("google_play_verifier_initialized", package_name=self.package_name)

    @classmethod
    def from_config(cls, config: GooglePlayConfig) -> "GoogleReceiptVerifier":
        return cls(config.package_name, service_account_json=config.service_account_json)

    async def _execute(self, operation: str, request: Any) -> dict[str, Any]:
        """Run a prepared API request off the event loop."""
        try:
            with vendor_call_span("google", operation):
                result = await asyncio.to_thread(request.execute)
        except HttpError as exc:
            status = exc.resp.status if exc.resp is not None else None
            error_content = exc.content.decode("utf-8") if exc.content else str(exc)
            logger.error(
                "google_play_api_error",
                operation=operation,
                status=status,
                error=error_content[:500],
            )
            if operation.endswith(".get"):
                if status == 404:
                    raise VerificationFailedError("purchase not found or invalid token") from exc
                if status == 410:
                    raise VerificationFailedError("purchase token expired") from exc
                if status == 400:
                    raise VerificationFailedError(f"invalid purchase: {error_content}") from exc
            raise VendorAPIError(
                "google", f"{operation}: {error_content}", status_code=status
            ) from exc

        return dict(result or {})

    async def verify_product(self, product_id: str, token: str) -> GooglePurchase:
        """
        Verify a one-time product purchase.

        Raises:
            VerificationFailedError: If Google rejects the token
            VendorAPIError: If the API call fails otherwise
        """
        product_id = product_id.strip()
        token = token.strip()
        if not product_id or not token:
            raise VerificationFailedError("product_id and purchase_token are required")

        logger.info(
            "verifying_google_play_product",
            product_id=product_id,
            token=token_preview(token),
        )
        result = await self._execute(
            "products.get",
            self.service.purchases()
            .products()
            .get(packageName=self.package_name, productId=product_id, token=token),
        )

        raw_state = int(result.get("purchaseState", 0))
        purchase = GooglePurchase(
            kind=KIND_PRODUCT,
            product_id=product_id,
            order_id=str(result.get("orderId") or ""),
            purchase_token=token,
            package_name=self.package_name,
            purchase_state=0 if raw_state == 0 else 1,
            status=_PRODUCT_STATUS.get(raw_state, STATUS_UNKNOWN),
            acknowledged=int(result.get("acknowledgementState", 0)) == 1,
            consumed=int(result.get("consumptionState", 0)) == 1,
            raw=json.dumps(result, sort_keys=True),
        )

        logger.info(
            "google_play_product_verified",
            product_id=product_id,
            order_id=purchase.order_id,
            status=purchase.status,
            acknowledged=purchase.acknowledged,
            consumed=purchase.consumed,
        )
        return purchase

    async def verify_subscription(self, token: str, subscription_id: str = "") -> GooglePurchase:
        """
        Verify a subscription purchase through subscriptionsv2.

        Args:
            token: Purchase token
            subscription_id: Subscription product id the token must cover;
                backfilled from the line items when empty

        Raises:
            VerificationFailedError: If Google rejects the token or no line
                item is for subscription_id
            VendorAPIError: If the API call fails otherwise
        """
        token = token.strip()
        subscription_id = subscription_id.strip()
        if not token:
            raise VerificationFailedError("purchase_token is required")

        logger.info(
            "verifying_google_play_subscription",
            subscription_id=subscription_id,
            token=token_preview(token),
        )
        result = await self._execute(
            "subscriptionsv2.get",
            self.service.purchases()
            .subscriptionsv2()
            .get(packageName=self.package_name, token=token),
        )

        state = str(result.get("subscriptionState") or "")
        line_items = [item for item in result.get("lineItems") or [] if isinstance(item, Mapping)]
        if subscription_id:
            matching = [
                item
                for item in line_items
                if str(item.get("productId") or "").strip() == subscription_id
            ]
            if not matching:
                logger.warning(
                    "google_play_subscription_product_mismatch",
                    subscription_id=subscription_id,
                    line_item_products=[str(item.get("productId") or "") for item in line_items],
                    token=token_preview(token),
                )
                raise VerificationFailedError(
                    f"purchase token is not for subscription {subscription_id}"
                )
            line_items = matching
        summary = summarize_line_items(line_items, self._clock())

        if state == SUBSCRIPTION_STATE_PENDING:
            status, purchase_state = STATUS_PENDING, 1
        elif summary.active:
            purchase_state = 0
            # Canceled subscriptions still entitle until expiry
            status = STATUS_CANCELED if state == SUBSCRIPTION_STATE_CANCELED else STATUS_ACTIVE
        elif summary.latest_expiry is not None or state == SUBSCRIPTION_STATE_EXPIRED:
            status, purchase_state = STATUS_EXPIRED, 1
        else:
            status, purchase_state = STATUS_UNKNOWN, 1

        purchase = GooglePurchase(
            kind=KIND_SUBSCRIPTION,
            product_id=subscription_id or summary.product_id,
            order_id=summary.order_id or str(result.get("latestOrderId") or ""),
            purchase_token=token,
            package_name=self.package_name,
            purchase_state=purchase_state,
            status=status,
            acknowledged=result.get("acknowledgementState") == ACKNOWLEDGEMENT_STATE_ACKNOWLEDGED,
            expiry_time=summary.latest_expiry,
            raw=json.dumps(result, sort_keys=True),
        )

        logger.info(
            "google_play_subscription_verified",
            product_id=purchase.product_id,
            order_id=purchase.order_id,
            subscription_state=state,
            status=status,
            expiry_time=summary.latest_expiry.isoformat() if summary.latest_expiry else None,
        )
        return purchase

    async def acknowledge_product(self, product_id: str, token: str) -> None:
        """Acknowledge a one-time product purchase."""
        await self._execute(
            "products.acknowledge",
            self.service.purchases()
            .products()
            .acknowledge(
                packageName=self.package_name, productId=product_id, token=token, body={}
            ),
        )
        logger.info("google_play_product_acknowledged", product_id=product_id)

    async def consume_product(self, product_id: str, token: str) -> None:
        """Consume a one-time product so it can be bought again."""
        await self._execute(
            "products.consume",
            self.service.purchases()
            .products()
            .consume(packageName=self.package_name, productId=product_id, token=token),
        )
        logger.info("google_play_product_consumed", product_id=product_id)

    async def acknowledge_subscription(self, subscription_id: str, token: str) -> None:
        """Acknowledge a subscription purchase."""
        await self._execute(
            "subscriptions.acknowledge",
            self.service.purchases()
            .subscriptions()
            .acknowledge(
                packageName=self.package_name,
                subscriptionId=subscription_id,
                token=token,
                body={},
            ),
        )
        logger.info("google_play_subscription_acknowledged", subscription_id=subscription_id)
