import asyncio
from sqlalchemy import select
from convenio.core import config
from convenio.core.database import AsyncSessionLocal
from convenio.core.security import get_password_hash
from convenio.models.models import User
from convenio.services.identity import normalize_roles


async def ensure_admin():
    async with AsyncSessionLocal() as session:
        stmt = select(User).where(User.national_id == config.ADMIN_CPF)
        result = await session.execute(stmt)
        user = result.scalar()

        if user:
            print("Admin user already exists.")
            if not user.has_role("admin"):
                user.roles = normalize_roles(list(user.roles or []) + ["admin"])
                print("Granted the admin role")
            user.password_hash = get_password_hash(config.ADMIN_PASSWORD)
            print("Password reset to ADMIN_PASSWORD")
            await session.commit()
        else:
            print("Creating admin user...")
            session.add(User(
                name=config.ADMIN_NAME,
                national_id=config.ADMIN_CPF,
                password_hash=get_password_hash(config.ADMIN_PASSWORD),
                roles=["admin"],
                subscription_status="pending",
            ))
            await session.commit()
            print("Admin created successfully.")

if __name__ == "__main__":
    asyncio.run(ensure_admin())
