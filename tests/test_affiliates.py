from datetime import timedelta
from convenio.core.database import AsyncSessionLocal, utc_now
from convenio.services import affiliates
from tests.helpers import PASSWORD, login, make_user


async def test_track_requires_a_vendedor(client, professional):
    pro, _ = professional
    res = await client.post("/api/affiliates/track", json={"referral_code": str(pro.id), "visitor_id": "v-1"})
    assert res.status_code == 404
    assert res.json()["code"] == "INVALID_CODE"
    res = await client.post("/api/affiliates/track", json={"referral_code": "abc", "visitor_id": "v-1"})
    assert res.json()["code"] == "INVALID_CODE"


async def test_track_is_idempotent_per_visitor(client):
    seller = await make_user(["vendedor"], name="Vendedor")
    body = {"referral_code": str(seller.id), "visitor_id": "v-1"}
    first = (await client.post("/api/affiliates/track", json=body)).json()
    second = (await client.post("/api/affiliates/track", json=body)).json()
    assert first == second
    assert first["affiliate_id"] == seller.id


async def test_fingerprint_matches_new_visitor_id(client):
    seller = await make_user(["vendedor"], name="Vendedor")
    first = (await client.post("/api/affiliates/track", json={
        "referral_code": str(seller.id), "visitor_id": "v-1", "metadata": {"userAgent": "Mozilla/5.0 X"},
    })).json()
    again = (await client.post("/api/affiliates/track", json={
        "referral_code": str(seller.id), "visitor_id": "v-2", "user_agent": "Mozilla/5.0 X",
    })).json()
    assert again["referral_id"] == first["referral_id"]

    other = (await client.post("/api/affiliates/track", json={
        "referral_code": str(seller.id), "visitor_id": "v-3", "user_agent": "Safari",
    })).json()
    assert other["referral_id"] != first["referral_id"]


async def test_registration_binds_referral(client):
    seller = await make_user(["vendedor"], name="Vendedor")
    await client.post("/api/affiliates/track", json={"referral_code": str(seller.id), "visitor_id": "v-9"})
    assert (await client.get("/api/affiliates/check/v-9")).json()["has_referral"] is True

    res = await client.post("/api/auth/register", json={
        "name": "Indicado", "national_id": "22233344455", "password": PASSWORD, "visitor_id": "v-9",
    })
    assert res.status_code == 201
    assert (await client.get("/api/affiliates/check/v-9")).json() == {"has_referral": False}

    seller_headers = await login(client, seller.national_id, "vendedor")
    mine = (await client.get("/api/affiliates/my-referrals", headers=seller_headers)).json()
    assert mine["stats"] == {"total_clicks": 1, "total_registrations": 1, "total_conversions": 0}
    assert mine["referrals"][0]["user_name"] == "Indicado"


async def test_link_user_after_login(client, active_client):
    user, headers = active_client
    seller = await make_user(["vendedor"], name="Vendedor")
    await client.post("/api/affiliates/track", json={"referral_code": str(seller.id), "visitor_id": "v-5"})

    res = await client.post("/api/affiliates/link-user", json={"visitor_id": "v-5"}, headers=headers)
    assert res.json()["linked"] is True
    res = await client.post("/api/affiliates/link-user", json={"visitor_id": "v-5"}, headers=headers)
    assert res.json()["linked"] is False


async def test_convert_is_idempotent(client, admin_headers):
    seller = await make_user(["vendedor"], name="Vendedor")
    await client.post("/api/affiliates/track", json={"referral_code": str(seller.id), "visitor_id": "v-7"})
    buyer = await make_user(["client"], name="Comprador")
    async with AsyncSessionLocal() as s:
        await affiliates.link_user(s, buyer.id, "v-7")
        await s.commit()

    first = (await client.post("/api/affiliates/convert", json={"user_id": buyer.id}, headers=admin_headers)).json()
    assert first["converted"] is True
    second = (await client.post("/api/affiliates/convert", json={"user_id": buyer.id}, headers=admin_headers)).json()
    assert second["referral_id"] == first["referral_id"]

    rows = (await client.get("/api/affiliates/all", headers=admin_headers)).json()
    assert len(rows) == 1
    assert rows[0]["converted"] is True
    assert rows[0]["affiliate_name"] == "Vendedor"

    nobody = (await client.post("/api/affiliates/convert", json={"user_id": seller.id}, headers=admin_headers)).json()
    assert nobody["converted"] is False


async def test_my_referrals_needs_vendedor(client, active_client):
    _, headers = active_client
    assert (await client.get("/api/affiliates/my-referrals", headers=headers)).status_code == 403


async def test_normalize_metadata():
    assert affiliates.normalize_metadata({"userAgent": "UA"}) == {"user_agent": "UA"}
    assert affiliates.normalize_metadata({"userAgent": "old", "user_agent": "new"}) == {"user_agent": "new"}
    assert affiliates.normalize_metadata(None) == {}


async def referred_client(client, gateway, seller, visitor_id, national_id, payment_id):
    await client.post("/api/affiliates/track", json={"referral_code": str(seller.id), "visitor_id": visitor_id})
    await client.post("/api/auth/register", json={
        "name": f"Cliente {visitor_id}", "national_id": national_id, "password": PASSWORD, "visitor_id": visitor_id,
    })
    headers = await login(client, national_id, "client")
    intent = (await client.post("/api/payments/create-subscription", headers=headers)).json()
    gateway.settle(payment_id, intent["external_reference"])
    res = await client.post("/api/webhooks/mercadopago", json={"type": "payment", "data": {"id": payment_id}})
    assert res.json()["status"] == "paid"


async def test_paid_subscription_owes_default_commission(client, gateway, admin_headers):
    seller = await make_user(["vendedor"], name="Vendedor")
    await referred_client(client, gateway, seller, "v-20", "44455566677", "pay-20")

    commissions = (await client.get(f"/api/admin/affiliates/{seller.id}/commissions", headers=admin_headers)).json()
    assert [(c["amount"], c["status"], c["payment_reference"]) for c in commissions] == [(10.0, "pending", "pay-20")]
    assert commissions[0]["client_cpf"] == "44455566677"

    # A repeated conversion owes nothing more
    async with AsyncSessionLocal() as s:
        await affiliates.convert(s, commissions[0]["client_id"], payment_reference="pay-21")
        await s.commit()
    again = (await client.get(f"/api/admin/affiliates/{seller.id}/commissions", headers=admin_headers)).json()
    assert len(again) == 1


async def test_commission_payment_and_reports(client, gateway, admin_headers):
    seller = await make_user(["vendedor"], name="Vendedor")
    res = await client.put(f"/api/admin/affiliates/{seller.id}",
                           json={"commission_amount": "25.00", "pix_key": "vendedor@pix"}, headers=admin_headers)
    assert res.json()["commission_amount"] == 25.0
    assert (await client.put(f"/api/admin/affiliates/{seller.id}", json={"commission_amount": "-1"},
                             headers=admin_headers)).status_code == 400

    await referred_client(client, gateway, seller, "v-30", "55566677788", "pay-30")
    await referred_client(client, gateway, seller, "v-31", "55566677799", "pay-31")
    pending = (await client.get(f"/api/admin/affiliates/{seller.id}/commissions?status=pending",
                                headers=admin_headers)).json()
    assert [c["amount"] for c in pending] == [25.0, 25.0]

    url = f"/api/admin/affiliates/{seller.id}/commissions/{pending[0]['id']}/pay"
    res = await client.put(url, data={"paid_method": "pix"},
                           files={"receipt": ("recibo.jpg", b"\xff\xd8\xff fake jpeg", "image/jpeg")},
                           headers=admin_headers)
    assert res.status_code == 200
    paid = res.json()
    assert paid["status"] == "paid"
    assert paid["paid_method"] == "pix"
    assert paid["paid_receipt_url"] == "https://files.test/receipts/photo.jpg"
    assert (await client.put(url, data={"paid_method": "pix"}, headers=admin_headers)).status_code == 400
    other = f"/api/admin/affiliates/{seller.id}/commissions/999/pay"
    assert (await client.put(other, data={"paid_method": "pix"}, headers=admin_headers)).status_code == 404

    listed = (await client.get("/api/admin/affiliates", headers=admin_headers)).json()
    assert [(a["id"], a["clients_count"], a["pending_total"], a["paid_total"]) for a in listed] == [
        (seller.id, 2, 25.0, 25.0)
    ]

    report = (await client.get("/api/admin/affiliates/financial-report", headers=admin_headers)).json()
    assert report["totals"] == {"pending": 25.0, "paid": 25.0, "overall": 50.0}
    assert report["affiliates"][0]["pix_key"] == "vendedor@pix"
    today = utc_now().date()
    past = (await client.get(
        f"/api/admin/affiliates/financial-report?end_date={(today - timedelta(days=2)).isoformat()}",
        headers=admin_headers,
    )).json()
    assert past["affiliates"] == []
    assert past["totals"]["overall"] == 0.0

    seller_headers = await login(client, seller.national_id, "vendedor")
    board = (await client.get("/api/affiliate/dashboard", headers=seller_headers)).json()
    assert board["code"] == str(seller.id)
    assert board["stats"]["total_conversions"] == 2
    assert (board["pending_total"], board["paid_total"]) == (25.0, 25.0)
    assert len(board["commissions"]) == 2


async def test_dashboard_is_for_vendedores(client, active_client):
    _, headers = active_client
    assert (await client.get("/api/affiliate/dashboard", headers=headers)).status_code == 403


async def test_commission_routes_need_a_vendedor(client, admin_headers, professional):
    pro, _ = professional
    res = await client.get(f"/api/admin/affiliates/{pro.id}/commissions", headers=admin_headers)
    assert res.status_code == 404
