"""SQLAlchemy models for the realty CRM billing backend.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from realtycrm.models.subscription import Subscription
from realtycrm.models.subscription_history import SubscriptionHistory
from realtycrm.models.user import User

__all__ = [
    "Subscription",
    "SubscriptionHistory",
    "User",
]
