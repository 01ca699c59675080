from datetime import datetime, timedelta
from decimal import Decimal
import pytest
from sqlalchemy.exc import IntegrityError
from convenio.core.database import AsyncSessionLocal, utc_now
from convenio.core.errors import ValidationFailed
from convenio.models.models import AgendaPayment, Dependent
from convenio.services import identity, payments
from tests.helpers import PASSWORD, grant_access, login, make_user


def notification(payment_id):
    return {"type": "payment", "data": {"id": payment_id}}


async def pending_client(client, name="Pendente"):
    user = await make_user(["client"], name=name)
    return user, await login(client, user.national_id, "client")


async def test_external_reference_round_trip():
    ref = payments.build_external_reference("agenda", 7, 30)
    assert payments.parse_external_reference(ref) == ("agenda", 7, 30)
    assert payments.parse_external_reference("subscription_12_1700000000000") == ("subscription", 12, None)
    for bad in (None, "", "gift_1_2", "subscription_x_1", "agenda_1_2"):
        with pytest.raises(ValidationFailed):
            payments.parse_external_reference(bad)


async def test_subscription_price_counts_dependents(client, active_client, gateway):
    user, headers = active_client
    for i in range(2):
        await client.post("/api/dependents", json={"name": f"Dep {i}", "national_id": f"6000000000{i}"}, headers=headers)

    res = await client.post("/api/payments/create-subscription", headers=headers)
    assert res.status_code == 200
    intent = res.json()
    assert intent["amount"] == 350.0
    assert intent["init_point"] == "https://checkout.test/pref-1"
    assert intent["external_reference"].startswith(f"subscription_{user.id}_")

    preference = gateway.preferences[0]
    assert preference["items"][0]["unit_price"] == 350.0
    assert preference["payer"]["identification"]["number"] == user.national_id
    assert preference["notification_url"].endswith("/api/webhooks/mercadopago")
    assert preference["external_reference"] == intent["external_reference"]


async def test_only_clients_subscribe(client, professional):
    _, headers = professional
    assert (await client.post("/api/payments/create-subscription", headers=headers)).status_code == 403


async def test_approved_subscription_activates_for_a_year(client, gateway):
    user, headers = await pending_client(client)
    intent = (await client.post("/api/payments/create-subscription", headers=headers)).json()
    assert intent["amount"] == 250.0
    gateway.settle("pay-1", intent["external_reference"])

    res = await client.post("/api/webhooks/mercadopago", json=notification("pay-1"))
    assert res.status_code == 200
    assert res.json()["status"] == "paid"

    async with AsyncSessionLocal() as s:
        stored = await identity.get_user(s, user.id)
    assert stored.subscription_status == "active"
    assert stored.subscription_expiry - utc_now() > timedelta(days=364)

    again = await client.post("/api/webhooks/mercadopago", json=notification("pay-1"))
    assert again.json() == {"status": "already_processed"}

    history = (await client.get("/api/payments/history", headers=headers)).json()
    assert [(p["flavor"], p["status"], p["gateway_payment_id"]) for p in history] == [("subscription", "paid", "pay-1")]
    notes = (await client.get("/api/notifications", headers=headers)).json()
    assert notes[0]["type"] == "payment"


async def test_rejected_payment_marks_intent_failed(client, gateway):
    user, headers = await pending_client(client)
    intent = (await client.post("/api/payments/create-subscription", headers=headers)).json()
    gateway.settle("pay-2", intent["external_reference"], status="rejected")

    res = await client.post("/api/webhooks/mercadopago", json=notification("pay-2"))
    assert res.json() == {"status": "failed"}
    async with AsyncSessionLocal() as s:
        stored = await identity.get_user(s, user.id)
    assert stored.subscription_status == "pending"


async def test_approval_without_local_intent_is_recorded(client, gateway):
    user = await make_user(["client"], name="Sem intenção")
    gateway.settle("pay-3", f"subscription_{user.id}_1700000000000")
    res = await client.post("/api/webhooks/mercadopago", json=notification("pay-3"))
    assert res.json()["status"] == "paid"
    headers = await login(client, user.national_id, "client")
    assert (await client.get(f"/api/users/{user.id}/subscription-status", headers=headers)).json()["is_active"] is True


async def test_query_string_notification(client, gateway):
    user, headers = await pending_client(client)
    intent = (await client.post("/api/payments/create-subscription", headers=headers)).json()
    gateway.settle("pay-4", intent["external_reference"])
    res = await client.post("/api/webhooks/mercadopago?topic=payment&id=pay-4")
    assert res.json()["status"] == "paid"


async def test_non_payment_notifications_are_ignored(client):
    res = await client.post("/api/webhooks/mercadopago", json={"type": "merchant_order", "data": {"id": "1"}})
    assert res.json() == {"status": "ignored"}
    res = await client.post("/api/webhooks/mercadopago", content=b"not json")
    assert res.json() == {"status": "ignored"}


async def test_unknown_reference_is_ignored(client, gateway):
    gateway.settle("pay-5", "gift_1_2")
    res = await client.post("/api/webhooks/mercadopago", json=notification("pay-5"))
    assert res.json() == {"status": "ignored"}


async def test_gateway_failure_asks_for_retry(client):
    res = await client.post("/api/webhooks/mercadopago", json=notification("missing"))
    assert res.status_code == 500
    assert res.json()["code"] == "INTERNAL"


async def test_dependent_activation(client, active_client, gateway):
    _, headers = active_client
    dep = (await client.post("/api/dependents", json={"name": "Filho", "national_id": "60000000009"}, headers=headers)).json()
    intent = (await client.post(f"/api/payments/dependents/{dep['id']}/create-payment", headers=headers)).json()
    assert intent["amount"] == 50.0
    gateway.settle("pay-6", intent["external_reference"], amount="50.00")

    assert (await client.post("/api/webhooks/mercadopago", json=notification("pay-6"))).json()["status"] == "paid"
    async with AsyncSessionLocal() as s:
        dependent = await s.get(Dependent, dep["id"])
    assert dependent.subscription_status == "active"
    assert dependent.payment_reference == "pay-6"

    res = await client.post(f"/api/payments/dependents/{dep['id']}/create-payment", headers=headers)
    assert res.status_code == 400


async def test_dependent_payment_of_another_client(client, active_client):
    _, headers = active_client
    dep = (await client.post("/api/dependents", json={"name": "Filho", "national_id": "60000000009"}, headers=headers)).json()
    _, other_headers = await pending_client(client, name="Outro")
    res = await client.post(f"/api/payments/dependents/{dep['id']}/create-payment", headers=other_headers)
    assert res.status_code == 403


async def test_agenda_purchase_extends_access(client, professional, gateway):
    pro, headers = professional
    await grant_access(pro.id, days=10)
    intent = (await client.post("/api/payments/agenda/create-payment", headers=headers)).json()
    assert intent["amount"] == 24.99
    assert intent["external_reference"].startswith(f"agenda_{pro.id}_30_")
    gateway.settle("pay-7", intent["external_reference"], amount="24.99")

    assert (await client.post("/api/webhooks/mercadopago", json=notification("pay-7"))).json()["status"] == "paid"
    status = (await client.get("/api/scheduling-access/status", headers=headers)).json()
    assert status["has_access"] is True
    remaining = datetime.fromisoformat(status["expires_at"]) - utc_now()
    assert timedelta(days=39) < remaining <= timedelta(days=40)


async def test_professional_transfer(client, professional, gateway):
    _, headers = professional
    res = await client.post("/api/payments/professional/create-payment", json={"amount": "0"}, headers=headers)
    assert res.status_code == 400
    intent = (await client.post("/api/payments/professional/create-payment", json={"amount": "123.45"}, headers=headers)).json()
    gateway.settle("pay-8", intent["external_reference"], amount="123.45")
    assert (await client.post("/api/webhooks/mercadopago", json=notification("pay-8"))).json()["status"] == "paid"
    history = (await client.get("/api/payments/history", headers=headers)).json()
    assert history[0]["amount"] == 123.45


async def test_paid_subscription_converts_referral(client, gateway, admin_headers):
    seller = await make_user(["vendedor"], name="Vendedor")
    await client.post("/api/affiliates/track", json={"referral_code": str(seller.id), "visitor_id": "v-1"})
    res = await client.post("/api/auth/register", json={
        "name": "Indicado", "national_id": "33344455566", "password": PASSWORD, "visitor_id": "v-1",
    })
    user_id = res.json()["user"]["id"]
    headers = await login(client, "33344455566", "client")

    intent = (await client.post("/api/payments/create-subscription", headers=headers)).json()
    gateway.settle("pay-9", intent["external_reference"])
    await client.post("/api/webhooks/mercadopago", json=notification("pay-9"))

    rows = (await client.get("/api/affiliates/all", headers=admin_headers)).json()
    assert [(r["user_id"], r["converted"]) for r in rows] == [(user_id, True)]


async def test_reference_paid_twice_keeps_each_payment(client, professional, gateway):
    _, headers = professional
    intent = (await client.post("/api/payments/agenda/create-payment", headers=headers)).json()
    gateway.settle("pay-A", intent["external_reference"], amount="24.99")
    gateway.settle("pay-B", intent["external_reference"], amount="24.99")

    assert (await client.post("/api/webhooks/mercadopago", json=notification("pay-A"))).json()["status"] == "paid"
    assert (await client.post("/api/webhooks/mercadopago", json=notification("pay-B"))).json()["status"] == "paid"
    again = await client.post("/api/webhooks/mercadopago", json=notification("pay-A"))
    assert again.json() == {"status": "already_processed"}

    status = (await client.get("/api/scheduling-access/status", headers=headers)).json()
    remaining = datetime.fromisoformat(status["expires_at"]) - utc_now()
    assert timedelta(days=59) < remaining <= timedelta(days=60)

    history = (await client.get("/api/payments/history", headers=headers)).json()
    assert sorted((p["status"], p["gateway_payment_id"]) for p in history) == [("paid", "pay-A"), ("paid", "pay-B")]
    assert {p["gateway_preference_id"] for p in history} == {intent["preference_id"]}


async def test_concurrent_delivery_applies_once(client, professional, gateway, monkeypatch):
    _, headers = professional
    intent = (await client.post("/api/payments/agenda/create-payment", headers=headers)).json()
    gateway.settle("pay-C", intent["external_reference"], amount="24.99")

    async def not_paid_yet(session, payment_id):
        return False

    # Both deliveries get past the early duplicate check, as when they race
    monkeypatch.setattr(payments, "_already_paid", not_paid_yet)

    assert (await client.post("/api/webhooks/mercadopago", json=notification("pay-C"))).json()["status"] == "paid"
    again = await client.post("/api/webhooks/mercadopago", json=notification("pay-C"))
    assert again.json() == {"status": "already_processed"}

    status = (await client.get("/api/scheduling-access/status", headers=headers)).json()
    remaining = datetime.fromisoformat(status["expires_at"]) - utc_now()
    assert remaining <= timedelta(days=30)
    notes = (await client.get("/api/notifications", headers=headers)).json()
    assert len(notes) == 1


async def test_gateway_payment_id_is_unique(professional):
    pro, _ = professional
    async with AsyncSessionLocal() as s:
        for ref in ("agenda_1_30_1", "agenda_1_30_2"):
            s.add(AgendaPayment(
                professional_id=pro.id, amount=Decimal("24.99"), status="paid",
                external_reference=ref, gateway_payment_id="pay-D",
            ))
        with pytest.raises(IntegrityError):
            await s.flush()
