"""Shared API dependencies: single import point for all routers.

Re-exports the database session, authentication and scheduler dependencies
so that router modules can import everything they need from one place::

    from realtycrm.api.deps import get_db, get_current_admin_user
"""

from realtycrm.auth.dependencies import get_current_admin_user, get_current_user
from realtycrm.database import get_db
from realtycrm.scheduler.subscription_scheduler import SubscriptionScheduler, subscription_scheduler


def get_scheduler() -> SubscriptionScheduler:
    """The process-wide scheduler instance (overridable in tests)."""
    return subscription_scheduler


__all__ = [
    "get_db",
    "get_current_user",
    "get_current_admin_user",
    "get_scheduler",
]
