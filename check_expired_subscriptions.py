"""One-shot run of the subscription expiry job, for cron."""
import asyncio
import logging
from convenio.core.database import AsyncSessionLocal
from convenio.services.subscriptions import expire_subscriptions

logging.basicConfig(level=logging.INFO)


async def main():
    async with AsyncSessionLocal() as session:
        result = await expire_subscriptions(session)
        await session.commit()
    print(f"Expired subscriptions: {result['clients']} client(s), {result['dependents']} dependent(s)")

if __name__ == "__main__":
    asyncio.run(main())
