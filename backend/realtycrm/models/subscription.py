"""Subscription model: recurring billing state per customer-plan pairing."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from realtycrm.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Tracks a customer's plan, billing key and scheduler cursor."""

    __tablename__ = "subscriptions"

    customer_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_name: Mapped[str] = mapped_column(String(255), nullable=False)

    # Billing terms; price is in minor currency units
    price: Mapped[int] = mapped_column(Integer, nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, server_default="monthly", default="monthly")
    billing_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String(50), nullable=False, server_default="active", default="active", index=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default=true(), default=True)

    # Timing; next_billing_date is the scheduling cursor
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_payment_attempt: Mapped[datetime | None] = mapped_column(nullable=True)
    grace_period_end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    end_date: Mapped[datetime | None] = mapped_column(nullable=True)
    suspended_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Retry bookkeeping
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0", default=0)
    payment_history: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)

    # Relationships
    customer: Mapped["User"] = relationship(back_populates="subscriptions", lazy="selectin")  # type: ignore[name-defined]  # noqa: F821

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, customer_id={self.customer_id}, "
            f"plan={self.plan_id}, status={self.status}, retry_count={self.retry_count})>"
        )
