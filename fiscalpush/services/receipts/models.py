"""Fiscal receipt persistence model."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import DateTime, Index, Integer, String, Text, func, text
from sqlalchemy.orm import Mapped, mapped_column

from fiscalpush.common.db import Base, JSONType


class VfdReceipt(Base):
    """One fiscal receipt issued (or being issued) for a domain subject.

    `model_type`/`model_id` reference the originating order or subscription;
    at most one live receipt exists per subject and receipt type.
    """

    __tablename__ = "vfd_receipts"
    __table_args__ = (
        Index("ix_vfd_receipts_subject", "model_id", "model_type"),
        Index(
            "uq_vfd_receipts_subject_type",
            "model_type",
            "model_id",
            "receipt_type",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    receipt_number: Mapped[str] = mapped_column(String, unique=True)
    receipt_url: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_response: Mapped[Any] = mapped_column(JSONType, nullable=True)
    receipt_type: Mapped[str] = mapped_column(String, index=True)
    model_id: Mapped[str] = mapped_column(String)
    model_type: Mapped[str] = mapped_column(String)
    amount: Mapped[int] = mapped_column(Integer)
    payment_method: Mapped[str] = mapped_column(String)
    customer_name: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, index=True, default="pending")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    synced_to_archive_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "receipt_url": self.receipt_url,
            "receipt_type": self.receipt_type,
            "model_type": self.model_type,
            "model_id": self.model_id,
            "amount": self.amount,
            "payment_method": self.payment_method,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "customer_email": self.customer_email,
            "status": self.status,
            "error_message": self.error_message,
            "synced_to_archive_at": self.synced_to_archive_at.isoformat() if self.synced_to_archive_at else None,
            "sync_error": self.sync_error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
