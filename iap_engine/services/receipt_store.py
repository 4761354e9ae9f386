"""
Receipt Store - Persistence of verified purchases.

ReceiptStore is the narrow interface the processor and ingestor depend on.
SqlReceiptStore implements it over the iap_receipts table.
"""

from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from iap_engine.db.models import IAPReceipt
from iap_engine.exceptions import ReceiptAlreadyExistsError, ReceiptNotFoundError
from iap_engine.models.domain import (
    EntitlementTarget,
    PurchaseReceipt,
    StoredReceipt,
    Vendor,
    target_from_dict,
)

logger = get_logger(__name__)


class ReceiptStore(Protocol):
    """
    Storage of processed receipts.

    Implementations must enforce uniqueness of (vendor, receipt_key) and raise
    ReceiptAlreadyExistsError from save when it is violated.
    """

    async def get_owner_by_token(self, vendor: Vendor, receipt_key: str) -> int:
        """Owner of a receipt; ReceiptNotFoundError if absent."""
        ...

    async def is_processed(self, vendor: Vendor, receipt_key: str) -> bool: ...

    async def save(self, receipt: PurchaseReceipt) -> None: ...

    async def delete_by_token(self, vendor: Vendor, receipt_key: str) -> None: ...

    async def find_by_original_transaction_id(self, original_transaction_id: str) -> StoredReceipt:
        """Latest Apple receipt of a renewal chain; ReceiptNotFoundError if absent."""
        ...

    async def find_target_by_token(self, vendor: Vendor, receipt_key: str) -> StoredReceipt:
        """Receipt with its decoded target; ReceiptNotFoundError if absent."""
        ...


def _decode_target(row: IAPReceipt) -> EntitlementTarget | None:
    try:
        return target_from_dict(row.target)
    except ValueError as e:
        logger.warning("iap_receipt_target_unreadable", receipt_id=row.id, error=str(e))
        return None


def _to_stored(row: IAPReceipt) -> StoredReceipt:
    return StoredReceipt(
        vendor=Vendor(row.vendor),
        receipt_key=row.receipt_key,
        owner_user_id=row.owner_user_id,
        product_id=row.product_id,
        target=_decode_target(row),
        original_transaction_id=row.original_transaction_id,
    )


class SqlReceiptStore:
    """ReceiptStore over SQLAlchemy; every write commits."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _find(self, vendor: Vendor, receipt_key: str) -> IAPReceipt | None:
        stmt = select(IAPReceipt).where(
            IAPReceipt.vendor == vendor.value,
            IAPReceipt.receipt_key == receipt_key,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_owner_by_token(self, vendor: Vendor, receipt_key: str) -> int:
        row = await self._find(vendor, receipt_key)
        if row is None:
            raise ReceiptNotFoundError(f"{vendor.value} receipt")
        return row.owner_user_id

    async def is_processed(self, vendor: Vendor, receipt_key: str) -> bool:
        return await self._find(vendor, receipt_key) is not None

    async def save(self, receipt: PurchaseReceipt) -> None:
        """
        Insert a receipt.

        Raises:
            ReceiptAlreadyExistsError: If (vendor, receipt_key) already exists
        """
        row = IAPReceipt(
            vendor=receipt.vendor.value,
            receipt_key=receipt.receipt_key,
            original_transaction_id=receipt.original_transaction_id,
            owner_user_id=receipt.owner_user_id,
            product_id=receipt.product_id,
            order_id=receipt.order_id,
            environment=receipt.environment,
            target=receipt.target.to_dict(),
            raw_payload=receipt.raw_payload,
            processed_at=receipt.processed_at,
        )
        self.session.add(row)
        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            # Concurrent request inserted the same receipt first
            await self.session.rollback()
            logger.info(
                "iap_receipt_insert_conflict",
                vendor=receipt.vendor.value,
                product_id=receipt.product_id,
            )
            raise ReceiptAlreadyExistsError(receipt.vendor.value, receipt.receipt_key) from e

    async def delete_by_token(self, vendor: Vendor, receipt_key: str) -> None:
        stmt = delete(IAPReceipt).where(
            IAPReceipt.vendor == vendor.value,
            IAPReceipt.receipt_key == receipt_key,
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        if result.rowcount == 0:
            raise ReceiptNotFoundError(f"{vendor.value} receipt")

    async def find_by_original_transaction_id(self, original_transaction_id: str) -> StoredReceipt:
        stmt = (
            select(IAPReceipt)
            .where(
                IAPReceipt.vendor == Vendor.APPLE.value,
                IAPReceipt.original_transaction_id == original_transaction_id,
            )
            .order_by(IAPReceipt.processed_at.desc(), IAPReceipt.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise ReceiptNotFoundError(f"original transaction {original_transaction_id}")
        return _to_stored(row)

    async def find_target_by_token(self, vendor: Vendor, receipt_key: str) -> StoredReceipt:
        row = await self._find(vendor, receipt_key)
        if row is None:
            raise ReceiptNotFoundError(f"{vendor.value} receipt")
        return _to_stored(row)
