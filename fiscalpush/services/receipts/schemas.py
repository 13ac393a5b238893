"""API request/response schemas for receipt endpoints."""

from pydantic import BaseModel, Field


class ReceiptGenerateRequest(BaseModel):
    """Direct generation request; `amount` is in minor units (cents)."""

    receipt_type: str
    model_type: str
    model_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    payment_method: str = Field(min_length=1)
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_email: str | None = None


class ReceiptRetryRequest(BaseModel):
    limit: int = Field(default=10, gt=0, le=500)
    dry_run: bool = False


class ArchiveSyncRequest(BaseModel):
    days: int = Field(default=7, gt=0)
    limit: int = Field(default=100, gt=0, le=1000)
    retry_failed: bool = False
    dry_run: bool = False
