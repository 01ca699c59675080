import asyncio
from sqlalchemy import select
from convenio.core.database import AsyncSessionLocal
from convenio.models.models import User


async def list_users():
    async with AsyncSessionLocal() as session:
        result = await session.execute(select(User).order_by(User.id))
        users = result.scalars().all()
        print(f"Total Users: {len(users)}")
        for u in users:
            expiry = u.subscription_expiry.strftime("%d/%m/%Y") if u.subscription_expiry else "-"
            print(f"ID: {u.id}, CPF: {u.national_id}, Name: {u.name}, Roles: {','.join(u.roles or [])}, "
                  f"Subscription: {u.subscription_status} (até {expiry})")

if __name__ == "__main__":
    asyncio.run(list_users())
