import asyncio
import logging
from datetime import datetime
from typing import Optional
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.database import AsyncSessionLocal, utc_now
from convenio.models.models import Dependent, User

logger = logging.getLogger(__name__)


async def expire_subscriptions(session: AsyncSession, now: Optional[datetime] = None) -> dict:
    """Flip every active subscription whose expiry has passed to ``expired``."""
    now = now or utc_now()
    users = await session.execute(
        update(User)
        .where(User.subscription_status == "active", User.subscription_expiry <= now)
        .values(subscription_status="expired")
    )
    dependents = await session.execute(
        update(Dependent)
        .where(Dependent.subscription_status == "active", Dependent.subscription_expiry <= now)
        .values(subscription_status="expired")
    )
    result = {"clients": users.rowcount or 0, "dependents": dependents.rowcount or 0}
    if result["clients"] or result["dependents"]:
        logger.info("Expired %s client and %s dependent subscriptions", result["clients"], result["dependents"])
    return result


async def expiration_loop(interval: int):
    while True:
        try:
            async with AsyncSessionLocal() as session:
                await expire_subscriptions(session)
                await session.commit()
        except Exception:
            logger.exception("Subscription expiry job failed")
        await asyncio.sleep(interval)
