"""User model: account identity and the billing projection mirrored by the scheduler."""

from datetime import datetime

from sqlalchemy import Boolean, String, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from realtycrm.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """CRM account. Only the billing-relevant columns are modelled here."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="agent", nullable=False)

    # Billing projection
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false(), nullable=False)
    subscription_status: Mapped[str] = mapped_column(
        String(50), default="inactive", server_default="inactive", nullable=False, index=True
    )
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    next_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    subscription_start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    subscription_end_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Free trial
    free_trial_used: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false(), nullable=False)
    free_trial_start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    free_trial_end_date: Mapped[datetime | None] = mapped_column(nullable=True, index=True)

    # Relationships
    subscriptions: Mapped[list["Subscription"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Subscription", back_populates="customer", lazy="selectin"
    )

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} status={self.subscription_status!r}>"
