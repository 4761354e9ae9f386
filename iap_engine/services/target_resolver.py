"""
Entitlement Target Resolver - Maps store product ids to entitlement targets.

The catalog is static configuration: a JSON object keyed by product id whose
values describe the target, e.g.

    {
        "com.example.responses10": {"type": "responses", "quantity": 10},
        "com.example.service_1m": {"type": "subscription", "subscription_type": "service", "months": 1},
        "com.example.top7": {"type": "top", "duration_days": 7},
        "com.example.seats5": {"type": "business", "seats": 5}
    }

Clients never choose what they bought. For boost products they may only name
the listing to promote, and that binding is validated here.
"""

from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from structlog import get_logger

from iap_engine.exceptions import InvalidTargetError, UnsupportedProductError
from iap_engine.models.domain import (
    CatalogEntry,
    EntitlementTarget,
    TopProduct,
    parse_catalog,
)

logger = get_logger(__name__)


class ClientTargetBinding(BaseModel):
    """
    Listing binding sent by the client alongside a boost purchase.

    duration_days is accepted for wire compatibility but never used; the
    catalog fixes the duration.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    listing_type: str = Field(..., max_length=64)
    listing_id: int = Field(..., alias="id")
    duration_days: int | None = None


class EntitlementTargetResolver:
    """Resolves product ids against one vendor's catalog."""

    def __init__(
        self,
        catalog: Mapping[str, CatalogEntry],
        allowed_listing_types: Iterable[str],
    ) -> None:
        self.catalog = dict(catalog)
        self.allowed_listing_types = frozenset(
            item.strip().lower() for item in allowed_listing_types if item.strip()
        )

    @classmethod
    def from_json(
        cls, raw: str | Mapping[str, Any], allowed_listing_types: Iterable[str]
    ) -> "EntitlementTargetResolver":
        """Build a resolver from catalog JSON (see parse_catalog)."""
        return cls(parse_catalog(raw), allowed_listing_types)

    def _lookup(self, product_id: str) -> CatalogEntry:
        key = product_id.strip()
        if not key:
            raise UnsupportedProductError(product_id)
        entry = self.catalog.get(key)
        if entry is None:
            raise UnsupportedProductError(product_id)
        return entry

    def resolve(
        self,
        product_id: str,
        client_binding: ClientTargetBinding | Mapping[str, Any] | None = None,
    ) -> EntitlementTarget:
        """
        Resolve the target a purchase of product_id grants.

        Args:
            product_id: Store product id
            client_binding: Listing binding; required for boost products and
                ignored for everything else

        Returns:
            Concrete entitlement target

        Raises:
            UnsupportedProductError: If product_id is empty or not in the catalog
            InvalidTargetError: If a boost binding is missing or invalid
        """
        entry = self._lookup(product_id)
        if not isinstance(entry, TopProduct):
            return entry

        binding = self._parse_binding(client_binding)
        listing_type = binding.listing_type.strip().lower()
        if listing_type not in self.allowed_listing_types:
            logger.warning(
                "iap_top_binding_rejected",
                product_id=product_id,
                listing_type=listing_type,
            )
            raise InvalidTargetError(f"listing_type {listing_type!r} is not allowed")
        if binding.listing_id <= 0:
            raise InvalidTargetError("id must be positive")
        return entry.bind(listing_type, binding.listing_id)

    def resolve_stored(self, product_id: str) -> EntitlementTarget | None:
        """
        Resolve without a client binding, for receipts stored without a target.

        Returns None for unknown products and for boosts, which cannot be
        reconstructed without the listing.
        """
        try:
            entry = self._lookup(product_id)
        except UnsupportedProductError:
            return None
        if isinstance(entry, TopProduct):
            return None
        return entry

    @staticmethod
    def _parse_binding(
        client_binding: ClientTargetBinding | Mapping[str, Any] | None,
    ) -> ClientTargetBinding:
        if client_binding is None:
            raise InvalidTargetError("listing binding is required for top products")
        if isinstance(client_binding, ClientTargetBinding):
            return client_binding
        try:
            return ClientTargetBinding.model_validate(dict(client_binding))
        except (ValidationError, TypeError, ValueError) as e:
            raise InvalidTargetError(f"malformed listing binding: {e}") from e
