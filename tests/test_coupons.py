from datetime import timedelta
from convenio.core.database import utc_now
from tests.helpers import login, make_user


def notification(payment_id):
    return {"type": "payment", "data": {"id": payment_id}}


async def new_coupon(client, headers, **fields):
    body = {"code": "bemvindo", "discount_value": "50.00", **fields}
    res = await client.post("/api/admin/coupons", json=body, headers=headers)
    assert res.status_code == 201, res.text
    return res.json()


async def test_coupon_crud(client, admin_headers, active_client):
    _, client_headers = active_client
    res = await client.post("/api/admin/coupons", json={"code": "X", "discount_value": "5"}, headers=client_headers)
    assert res.status_code == 403

    coupon = await new_coupon(client, admin_headers, description="Boas-vindas")
    assert coupon["code"] == "BEMVINDO"
    assert coupon["coupon_type"] == "titular"
    assert coupon["discount_value"] == 50.0
    assert coupon["is_active"] is True

    res = await client.post("/api/admin/coupons", json={"code": " BemVindo ", "discount_value": "10"}, headers=admin_headers)
    assert res.status_code == 409
    res = await client.post("/api/admin/coupons", json={"code": "ZERO", "discount_value": "0"}, headers=admin_headers)
    assert res.status_code == 400
    res = await client.post("/api/admin/coupons", json={
        "code": "GIFT", "discount_value": "10", "coupon_type": "presente",
    }, headers=admin_headers)
    assert res.status_code == 400

    res = await client.put(f"/api/admin/coupons/{coupon['id']}", json={"discount_value": "30"}, headers=admin_headers)
    assert res.json()["discount_value"] == 30.0
    assert res.json()["description"] == "Boas-vindas"

    toggled = (await client.put(f"/api/admin/coupons/{coupon['id']}/toggle", headers=admin_headers)).json()
    assert toggled["is_active"] is False

    listed = (await client.get("/api/admin/coupons", headers=admin_headers)).json()
    assert [(c["code"], c["uses"]) for c in listed] == [("BEMVINDO", 0)]

    assert (await client.delete(f"/api/admin/coupons/{coupon['id']}", headers=admin_headers)).status_code == 200
    assert (await client.delete(f"/api/admin/coupons/{coupon['id']}", headers=admin_headers)).status_code == 404


async def test_validate_coupon(client, admin_headers, active_client):
    _, headers = active_client
    today = utc_now().date()
    await new_coupon(client, admin_headers)
    await new_coupon(client, admin_headers, code="VENCIDO", valid_until=(today - timedelta(days=1)).isoformat())
    await new_coupon(client, admin_headers, code="FUTURO", valid_from=(today + timedelta(days=3)).isoformat())
    await new_coupon(client, admin_headers, code="FILHOS", coupon_type="dependente")
    off = await new_coupon(client, admin_headers, code="PAUSADO")
    await client.put(f"/api/admin/coupons/{off['id']}/toggle", headers=admin_headers)

    res = (await client.get("/api/validate-coupon/bemvindo?type=titular", headers=headers)).json()
    assert res["valid"] is True
    assert res["coupon"]["discount_value"] == 50.0

    def rejected(body):
        assert body["valid"] is False
        return body["message"]

    assert rejected((await client.get("/api/validate-coupon/VENCIDO", headers=headers)).json()) == "Cupom expirado"
    assert rejected((await client.get("/api/validate-coupon/FUTURO", headers=headers)).json()) == "Cupom ainda não está válido"
    assert rejected((await client.get("/api/validate-coupon/PAUSADO", headers=headers)).json()) == "Cupom inválido"
    assert rejected((await client.get("/api/validate-coupon/NADA", headers=headers)).json()) == "Cupom inválido"
    message = rejected((await client.get("/api/validate-coupon/FILHOS?type=titular", headers=headers)).json())
    assert message == "Cupom não se aplica a este pagamento"
    assert (await client.get("/api/validate-coupon/FILHOS?type=dependente", headers=headers)).json()["valid"] is True


async def test_subscription_with_single_use_coupon(client, admin_headers, gateway):
    coupon = await new_coupon(client, admin_headers, unlimited_use=False)
    user = await make_user(["client"], name="Com Cupom")
    headers = await login(client, user.national_id, "client")

    res = await client.post("/api/payments/create-subscription", json={"coupon_code": "bemvindo"}, headers=headers)
    assert res.status_code == 200
    intent = res.json()
    assert intent["amount"] == 200.0
    assert intent["coupon_code"] == "BEMVINDO"
    assert intent["discount"] == 50.0
    assert gateway.preferences[0]["items"][0]["unit_price"] == 200.0

    gateway.settle("pay-c1", intent["external_reference"], amount="200.00")
    assert (await client.post("/api/webhooks/mercadopago", json=notification("pay-c1"))).json()["status"] == "paid"

    res = (await client.get("/api/validate-coupon/BEMVINDO", headers=headers)).json()
    assert res == {"valid": False, "message": "Cupom já utilizado"}
    res = await client.post("/api/payments/create-subscription", json={"coupon_code": "BEMVINDO"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["code"] == "COUPON_INVALID"

    listed = (await client.get("/api/admin/coupons", headers=admin_headers)).json()
    assert listed[0]["uses"] == 1
    res = await client.delete(f"/api/admin/coupons/{coupon['id']}", headers=admin_headers)
    assert res.status_code == 409


async def test_unpaid_intent_does_not_use_the_coupon(client, admin_headers, active_client):
    _, headers = active_client
    await new_coupon(client, admin_headers, unlimited_use=False)
    await client.post("/api/payments/create-subscription", json={"coupon_code": "BEMVINDO"}, headers=headers)
    assert (await client.get("/api/validate-coupon/BEMVINDO", headers=headers)).json()["valid"] is True


async def test_discount_cannot_cover_the_whole_price(client, admin_headers, active_client):
    _, headers = active_client
    await new_coupon(client, admin_headers, code="TUDO", discount_value="250.00")
    res = await client.post("/api/payments/create-subscription", json={"coupon_code": "TUDO"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["code"] == "COUPON_INVALID"


async def test_dependent_coupon(client, admin_headers, active_client, gateway):
    _, headers = active_client
    await new_coupon(client, admin_headers, code="FILHOS", coupon_type="dependente", discount_value="20.00")
    dep = (await client.post("/api/dependents", json={"name": "Filha", "national_id": "60000000077"}, headers=headers)).json()

    res = await client.post(f"/api/payments/dependents/{dep['id']}/create-payment",
                            json={"coupon_code": "BEMVINDO"}, headers=headers)
    assert res.status_code == 400
    res = await client.post(f"/api/payments/dependents/{dep['id']}/create-payment",
                            json={"coupon_code": "FILHOS"}, headers=headers)
    assert res.json()["amount"] == 30.0
