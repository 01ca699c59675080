from datetime import timedelta
from sqlalchemy import func, select
from convenio.core.database import AsyncSessionLocal, utc_now
from convenio.core.init_db import init_db
from convenio.models.models import Dependent, Service, ServiceCategory, User
from convenio.services import identity, subscriptions
from convenio.services.identity import role_filter
from tests.helpers import make_user


async def count(model, *criteria):
    async with AsyncSessionLocal() as s:
        return (await s.execute(select(func.count(model.id)).where(*criteria))).scalar()


async def test_bootstrap_is_idempotent():
    await init_db()
    await init_db()
    assert await count(ServiceCategory) == 3
    assert await count(Service) == 3
    assert await count(User, role_filter("admin")) == 1


async def test_missing_seeds_are_restored():
    async with AsyncSessionLocal() as s:
        service = (await s.execute(select(Service).where(Service.name == "Consulta Psicológica"))).scalar()
        await s.delete(service)
        await s.commit()
    await init_db()
    assert await count(Service, Service.name == "Consulta Psicológica") == 1


async def test_admin_not_reseeded_when_another_exists():
    await make_user(["admin"], name="Segundo Admin")
    await init_db()
    assert await count(User, role_filter("admin")) == 2


async def test_expire_subscriptions():
    now = utc_now()
    lapsed = await make_user(["client"], name="Vencido", active=True)
    current = await make_user(["client"], name="Em dia", active=True)
    async with AsyncSessionLocal() as s:
        user = await identity.get_user(s, lapsed.id)
        user.subscription_expiry = now - timedelta(minutes=1)
        s.add(Dependent(
            client_id=current.id, name="Dep", national_id="80000000001",
            subscription_status="active", subscription_expiry=now - timedelta(days=1),
        ))
        await s.commit()

    async with AsyncSessionLocal() as s:
        result = await subscriptions.expire_subscriptions(s)
        await s.commit()
    assert result == {"clients": 1, "dependents": 1}

    async with AsyncSessionLocal() as s:
        assert (await identity.get_user(s, lapsed.id)).subscription_status == "expired"
        assert (await identity.get_user(s, current.id)).subscription_status == "active"
        result = await subscriptions.expire_subscriptions(s)
    assert result == {"clients": 0, "dependents": 0}


async def test_expire_endpoint(client, admin_headers):
    res = await client.post("/api/admin/expire-subscriptions", headers=admin_headers)
    assert res.json() == {"expired": {"clients": 0, "dependents": 0}}


async def test_health(client):
    assert (await client.get("/api/health")).json()["status"] == "ok"
