"""Fakes for the external collaborators and shortcuts to build test data."""
from datetime import timedelta
from decimal import Decimal
from convenio.core.database import AsyncSessionLocal, utc_now
from convenio.services import access, identity

PASSWORD = "secret123"


class FakeGateway:
    """In-memory stand-in for Mercado Pago."""

    def __init__(self):
        self.preferences = []
        self.payments = {}

    async def create_preference(self, preference):
        self.preferences.append(preference)
        pref_id = f"pref-{len(self.preferences)}"
        return {"id": pref_id, "init_point_url": f"https://checkout.test/{pref_id}"}

    async def fetch_payment(self, payment_id):
        return self.payments[str(payment_id)]

    def settle(self, payment_id, external_reference, status="approved", amount="250.00"):
        self.payments[str(payment_id)] = {
            "id": str(payment_id),
            "status": status,
            "amount": Decimal(amount),
            "external_reference": external_reference,
        }


class FakeRenderer:
    def __init__(self):
        self.calls = []

    async def render(self, kind, inputs):
        self.calls.append((kind, inputs))
        return {"url": f"https://files.test/{kind}/{len(self.calls)}.pdf"}


class FakeImageHost:
    async def upload(self, data, content_type="image/jpeg", folder="photos"):
        return {"url": f"https://files.test/{folder}/photo.jpg", "public_id": f"{folder}/photo.jpg"}


_cpf_counter = [10000000000]


def next_cpf():
    _cpf_counter[0] += 1
    return str(_cpf_counter[0])


async def make_user(roles, name="Usuário", active=False, percentage=None, **profile):
    national_id = profile.pop("national_id", None) or next_cpf()
    async with AsyncSessionLocal() as s:
        user, _ = await identity.admin_create_user(
            s,
            {"name": name, "national_id": national_id, "percentage": percentage, **profile},
            roles,
            PASSWORD,
        )
        if active:
            user.subscription_status = "active"
            user.subscription_expiry = utc_now() + timedelta(days=365)
        await s.commit()
        return user


async def grant_access(professional_id, days=30):
    admin = await make_user(["admin"], name="Outro Admin")
    async with AsyncSessionLocal() as s:
        await access.grant_scheduling_access(s, professional_id, admin.id, utc_now() + timedelta(days=days))
        await s.commit()


async def login(client, national_id, role, password=PASSWORD):
    res = await client.post("/api/auth/login", json={"national_id": national_id, "password": password})
    assert res.status_code == 200, res.text
    ticket = res.json()["login_ticket"]
    res = await client.post("/api/auth/select-role", json={"login_ticket": ticket, "role": role})
    assert res.status_code == 200, res.text
    # Tests authenticate with explicit headers only
    client.cookies.clear()
    return {"Authorization": f"Bearer {res.json()['token']}"}


def bearer(response):
    return {"Authorization": f"Bearer {response.json()['token']}"}
