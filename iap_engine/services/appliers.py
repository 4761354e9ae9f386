"""
Entitlement Applier - Turns a resolved target into collaborator commands.

The engine never owns subscriptions, boosts or seats; it only issues commands
to the repositories and services the host application provides.
"""

from typing import Protocol

from structlog import get_logger

from iap_engine.exceptions import ApplyFailedError
from iap_engine.models.domain import (
    BusinessTarget,
    EntitlementTarget,
    PurchaseReceipt,
    ResponsesTarget,
    SubscriptionTarget,
    SubscriptionType,
    TopTarget,
    Vendor,
)

logger = get_logger(__name__)

BUSINESS_PROVIDER_NAMES = {
    Vendor.APPLE: "apple_iap",
    Vendor.GOOGLE: "google_play",
}
BUSINESS_PAID_STATE = "paid"


class SubscriptionRepository(Protocol):
    """Subscription and response-balance store owned by the host."""

    async def add_responses_balance(self, user_id: int, quantity: int) -> None: ...

    async def extend_subscription(
        self, user_id: int, subscription_type: SubscriptionType, months: int
    ) -> None: ...

    async def force_expire_subscription(
        self, user_id: int, subscription_type: SubscriptionType
    ) -> None: ...


class TopService(Protocol):
    """Listing promotion service owned by the host."""

    async def activate_top(
        self, user_id: int, listing_type: str, listing_id: int, duration_days: int
    ) -> None: ...


class BusinessService(Protocol):
    """Business seat licensing owned by the host."""

    async def purchase_seats(
        self,
        user_id: int,
        seats: int,
        provider: str,
        provider_txn_id: str,
        state: str,
    ) -> None: ...


class EntitlementApplier:
    """Applies and revokes entitlements through the host collaborators."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository | None = None,
        tops: TopService | None = None,
        business: BusinessService | None = None,
    ) -> None:
        self.subscriptions = subscriptions
        self.tops = tops
        self.business = business

    async def apply(self, user_id: int, target: EntitlementTarget, receipt: PurchaseReceipt) -> None:
        """
        Grant the entitlement a verified purchase paid for.

        Raises:
            ApplyFailedError: If the collaborator is missing or the command fails
        """
        try:
            await self._apply(user_id, target, receipt)
        except ApplyFailedError:
            raise
        except Exception as exc:
            logger.error(
                "iap_apply_failed",
                user_id=user_id,
                target=target.kind.value,
                vendor=receipt.vendor.value,
                error=str(exc),
            )
            raise ApplyFailedError(target.kind.value, str(exc)) from exc

        logger.info(
            "iap_entitlement_applied",
            user_id=user_id,
            target=target.kind.value,
            vendor=receipt.vendor.value,
            product_id=receipt.product_id,
        )

    async def _apply(self, user_id: int, target: EntitlementTarget, receipt: PurchaseReceipt) -> None:
        match target:
            case ResponsesTarget(quantity=quantity):
                if self.subscriptions is None:
                    raise ApplyFailedError(target.kind.value, "subscription repository is not configured")
                await self.subscriptions.add_responses_balance(user_id, quantity)
            case SubscriptionTarget(subscription_type=subscription_type, months=months):
                if self.subscriptions is None:
                    raise ApplyFailedError(target.kind.value, "subscription repository is not configured")
                await self.subscriptions.extend_subscription(user_id, subscription_type, months)
            case TopTarget(listing_type=listing_type, listing_id=listing_id, duration_days=days):
                if self.tops is None:
                    raise ApplyFailedError(target.kind.value, "top service is not configured")
                await self.tops.activate_top(user_id, listing_type, listing_id, days)
            case BusinessTarget(seats=seats):
                if self.business is None:
                    raise ApplyFailedError(target.kind.value, "business service is not configured")
                await self.business.purchase_seats(
                    user_id,
                    seats,
                    BUSINESS_PROVIDER_NAMES[receipt.vendor],
                    receipt.receipt_key,
                    BUSINESS_PAID_STATE,
                )
            case _:
                raise ApplyFailedError(str(getattr(target, "kind", "unknown")), "unsupported target")

    async def revoke(self, user_id: int, target: EntitlementTarget) -> bool:
        """
        Withdraw an entitlement after a vendor revocation.

        Only subscriptions can be withdrawn; consumed responses, served boosts
        and paid seats are left alone.

        Returns:
            True if a subscription was force-expired
        """
        if not isinstance(target, SubscriptionTarget):
            logger.info(
                "iap_revoke_not_supported",
                user_id=user_id,
                target=target.kind.value,
            )
            return False
        if self.subscriptions is None:
            logger.warning("iap_revoke_skipped_no_repository", user_id=user_id)
            return False

        await self.subscriptions.force_expire_subscription(user_id, target.subscription_type)
        logger.info(
            "iap_subscription_force_expired",
            user_id=user_id,
            subscription_type=target.subscription_type.value,
        )
        return True
