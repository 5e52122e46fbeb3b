"""Pydantic v2 response schemas for the manual subscription trigger endpoints."""

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Body returned when an operation fails."""

    success: bool = False
    message: str
    error: str


class PassRunResponse(BaseModel):
    """Outcome of a synchronously executed billing pass."""

    success: bool = True
    message: str
    active_subscriptions: int
    considered: int
    succeeded: int
    failed: int
    suspended: int
    expired: int
    skipped: bool


class SubscriptionSummary(BaseModel):
    """Active subscription with next-billing metadata."""

    id: uuid.UUID
    customer_id: uuid.UUID
    plan_name: str
    price: int
    next_billing_date: datetime | None = None
    last_payment_date: datetime | None = None
    retry_count: int

    model_config = ConfigDict(from_attributes=True)


class SubscriptionListResponse(BaseModel):
    success: bool = True
    data: list[SubscriptionSummary]


class UpcomingSubscription(BaseModel):
    """Subscription billing within the next 24 hours."""

    id: uuid.UUID
    customer_id: uuid.UUID
    plan_name: str
    price: int
    next_billing_date: datetime
    hours_until_billing: int


class UpcomingListResponse(BaseModel):
    success: bool = True
    data: list[UpcomingSubscription]
    count: int


class HistoryEntryResponse(BaseModel):
    """One billing audit event."""

    id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: uuid.UUID
    action: str
    description: str
    amount: int | None = None
    currency: str | None = None
    payment_key: str | None = None
    order_id: str | None = None
    status: str
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="extra_metadata")
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class HistoryListResponse(BaseModel):
    success: bool = True
    data: list[HistoryEntryResponse]


class SubscriptionDiagnosisResponse(BaseModel):
    """Date and retry diagnostics for one subscription."""

    subscription_id: uuid.UUID
    status: str
    start_date: datetime | None = None
    next_billing_date: datetime | None = None
    days_since_start: int | None = None
    days_until_billing: int | None = None
    is_overdue: bool
    expected_next_billing_date: datetime | None = None
    has_billing_key: bool
    retry_count: int
    recent_history: list[HistoryEntryResponse]

    model_config = ConfigDict(from_attributes=True)
