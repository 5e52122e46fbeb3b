"""Print billing-date diagnostics for one subscription.

Run inside Docker:
    docker compose exec backend python -m scripts.diagnose_subscription <subscription_id>
"""

import argparse
import asyncio
import sys
import uuid
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from realtycrm.database import async_session_factory, engine, utcnow
from realtycrm.services.subscription_service import diagnose_subscription, get_subscription


async def diagnose(subscription_id: uuid.UUID) -> int:
    async with async_session_factory() as session:
        subscription = await get_subscription(session, subscription_id)
        if subscription is None:
            print(f"❌ Subscription {subscription_id} not found")
            return 1
        report = await diagnose_subscription(session, subscription, utcnow())
    await engine.dispose()

    print("📅 Dates (UTC)")
    print(f"   Start:             {report.start_date}")
    print(f"   Next billing:      {report.next_billing_date}")
    print(f"   Expected next:     {report.expected_next_billing_date}")
    print(f"   Days since start:  {report.days_since_start}")
    print(f"   Days until billing: {report.days_until_billing}")
    if report.is_overdue:
        print("⚠️  Billing date has passed; the next monthly pass should charge this subscription.")
    print()
    print(f"🔑 Billing key: {'set' if report.has_billing_key else 'missing'}")
    print(f"   Status: {report.status}, retry count: {report.retry_count}")
    print()
    print(f"📜 Recent history ({len(report.recent_history)})")
    for idx, entry in enumerate(report.recent_history, start=1):
        print(f"   {idx}. {entry.action} - {entry.description} ({entry.created_at})")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("subscription_id", type=uuid.UUID)
    args = parser.parse_args()
    sys.exit(asyncio.run(diagnose(args.subscription_id)))


if __name__ == "__main__":
    main()
