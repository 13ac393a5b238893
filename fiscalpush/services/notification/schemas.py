"""API request/response schemas for notification endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class TokenRegisterRequest(BaseModel):
    """Token presented by a client app at login/registration."""

    token: str = Field(min_length=1)
    device_id: str | None = None


class TokenRemoveRequest(BaseModel):
    token: str = Field(min_length=1)


class TokenRegisterResponse(BaseModel):
    stored: bool


class NotificationSendRequest(BaseModel):
    """Operator/internal request to notify one user."""

    user_id: str = Field(min_length=1)
    type: str
    title: str = Field(min_length=1)
    body: str = Field(min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str | None
    type: str
    title: str
    body: str
    status: str
    retry_attempts: int | None
    error_message: str | None
    sent_at: datetime | None
    delivered_at: datetime | None
    read_at: datetime | None
