"""Reset a user's free-trial and subscription state so the trial can be started again.

Run inside Docker:
    docker compose exec backend python -m scripts.reset_user_subscription <user_id>
"""

import argparse
import asyncio
import sys
import uuid
from pathlib import Path

# Add backend to path so imports work when run as a script
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from realtycrm.database import async_session_factory, engine
from realtycrm.services.subscription_service import reset_user_billing


async def reset(user_id: uuid.UUID) -> int:
    async with async_session_factory() as session:
        user = await reset_user_billing(session, user_id)
        if user is None:
            print(f"❌ User {user_id} not found")
            return 1
        await session.commit()

    await engine.dispose()
    print(f"✅ Reset subscription state for {user.name} <{user.email}>")
    print("   free_trial_used=False, is_premium=False, subscription_status=inactive")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("user_id", type=uuid.UUID)
    args = parser.parse_args()
    sys.exit(asyncio.run(reset(args.user_id)))


if __name__ == "__main__":
    main()
