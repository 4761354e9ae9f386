"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations. The target
snapshot column is the only JSON, and it is decoded at the store boundary.
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import BigInteger, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class IAPReceipt(Base):
    """
    ORM model for iap_receipts table.

    One row per verified purchase. The row's existence is the idempotency
    proof for (vendor, receipt_key); it is written before the entitlement is
    applied and deleted only when applying fails.
    """

    __tablename__ = "iap_receipts"

    # Primary Key
    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=True)

    # Identity
    vendor: Mapped[str] = mapped_column(String(16), nullable=False)
    receipt_key: Mapped[str] = mapped_column(String(4096), nullable=False)
    original_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    owner_user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    # Purchase details
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    environment: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    target: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    raw_payload: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Timestamps
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        UniqueConstraint("vendor", "receipt_key", name="uq_iap_receipts_vendor_key"),
        Index("idx_iap_receipts_original_tx_id", "original_transaction_id"),
        Index("idx_iap_receipts_owner_user_id", "owner_user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<IAPReceipt(id={self.id}, vendor={self.vendor}, "
            f"product_id={self.product_id}, owner_user_id={self.owner_user_id})>"
        )
