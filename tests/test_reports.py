from tests.helpers import login, make_user

RANGE = "start_date=2030-03-01&end_date=2030-03-31"


async def seed_sales(client, headers, client_id, service_id):
    await client.post("/api/consultations", json={
        "client_id": client_id, "service_id": service_id, "value": "100.00", "date": "2030-03-10T14:00:00",
    }, headers=headers)
    patient = (await client.post("/api/private-patients", json={"name": "Particular"}, headers=headers)).json()
    await client.post("/api/consultations", json={
        "private_patient_id": patient["id"], "service_id": service_id, "value": "200.00", "date": "2030-03-31T23:30:00",
    }, headers=headers)
    dropped = (await client.post("/api/consultations", json={
        "client_id": client_id, "service_id": service_id, "value": "50.00", "date": "2030-03-12T14:00:00",
    }, headers=headers)).json()
    await client.put(f"/api/consultations/{dropped['id']}/cancel", json={"reason": "Faltou"}, headers=headers)
    # Outside the range
    await client.post("/api/consultations", json={
        "client_id": client_id, "service_id": service_id, "value": "999.00", "date": "2030-04-01T00:00:00",
    }, headers=headers)


async def test_revenue_report(client, admin_headers, professional, active_client, service_id):
    pro, headers = professional
    user, _ = active_client
    await seed_sales(client, headers, user.id, service_id)

    report = (await client.get(f"/api/reports/revenue?{RANGE}", headers=admin_headers)).json()
    assert report["total_revenue"] == 300.0
    [row] = report["revenue_by_professional"]
    assert row["professional_id"] == pro.id
    assert row["consultation_count"] == 2
    assert row["professional_payment"] == 210.0
    assert row["clinic_revenue"] == 90.0
    assert report["revenue_by_service"][0]["revenue"] == 300.0

    assert (await client.get(f"/api/reports/revenue?{RANGE}", headers=headers)).status_code == 403


async def test_professional_revenue_owes_only_convenio_share(client, professional, active_client, service_id):
    _, headers = professional
    user, _ = active_client
    await seed_sales(client, headers, user.id, service_id)

    report = (await client.get(f"/api/reports/professional-revenue?{RANGE}", headers=headers)).json()
    assert report["summary"]["total_revenue"] == 300.0
    assert report["summary"]["amount_to_pay"] == 30.0
    by_convenio = {c["is_convenio"]: c["amount_to_pay"] for c in report["consultations"]}
    assert by_convenio == {True: 30.0, False: 0.0}

    detailed = (await client.get(f"/api/reports/professional-detailed?{RANGE}", headers=headers)).json()["summary"]
    assert detailed["convenio_consultations"] == 1
    assert detailed["private_consultations"] == 1
    assert detailed["convenio_revenue"] == 100.0
    assert detailed["private_revenue"] == 200.0
    assert detailed["amount_to_pay"] == 30.0


async def test_admin_must_name_professional(client, admin_headers, professional):
    pro, _ = professional
    assert (await client.get(f"/api/reports/professional-revenue?{RANGE}", headers=admin_headers)).status_code == 400
    res = await client.get(f"/api/reports/professional-revenue?{RANGE}&professional_id={pro.id}", headers=admin_headers)
    assert res.status_code == 200


async def test_cancelled_consultations_report(client, admin_headers, professional, active_client, service_id):
    _, headers = professional
    user, _ = active_client
    await seed_sales(client, headers, user.id, service_id)

    rows = (await client.get(f"/api/reports/cancelled-consultations?{RANGE}", headers=headers)).json()
    assert [(r["value"], r["cancellation_reason"], r["cancelled_by_name"]) for r in rows] == [(50.0, "Faltou", "Dra. Ana")]

    other = await make_user(["professional"], name="Dr. Outro")
    other_headers = await login(client, other.national_id, "professional")
    assert (await client.get(f"/api/reports/cancelled-consultations?{RANGE}", headers=other_headers)).json() == []
    assert len((await client.get(f"/api/reports/cancelled-consultations?{RANGE}", headers=admin_headers)).json()) == 1


async def test_inverted_range(client, admin_headers):
    res = await client.get("/api/reports/revenue?start_date=2030-03-31&end_date=2030-03-01", headers=admin_headers)
    assert res.status_code == 400


async def test_city_reports_skip_blank_cities(client, admin_headers, active_client):
    await make_user(["client"], name="Sem cidade")
    await make_user(["client"], name="Cidade vazia", city="  ")
    await make_user(["professional"], name="Dr. Campinas", city="Campinas", state="SP")

    clients = (await client.get("/api/reports/clients-by-city", headers=admin_headers)).json()
    assert clients == [{
        "city": "São Paulo", "state": None, "client_count": 1,
        "active_clients": 1, "pending_clients": 0, "expired_clients": 0,
    }]

    professionals = (await client.get("/api/reports/professionals-by-city", headers=admin_headers)).json()
    assert professionals == [{
        "city": "Campinas", "state": "SP", "total_professionals": 1,
        "categories": [{"category_name": "Sem categoria", "count": 1}],
    }]


async def test_professional_reports_agree_on_amount_owed(client, active_client, service_id):
    user, _ = active_client
    pro = await make_user(["professional"], name="Dr. Centavos", percentage=70)
    headers = await login(client, pro.national_id, "professional")
    for day in (2, 3, 4):
        res = await client.post("/api/consultations", json={
            "client_id": user.id, "service_id": service_id, "value": "0.05", "date": f"2030-03-{day:02d}T10:00:00",
        }, headers=headers)
        assert res.status_code == 201

    summary = (await client.get(f"/api/reports/professional-revenue?{RANGE}", headers=headers)).json()["summary"]
    detailed = (await client.get(f"/api/reports/professional-detailed?{RANGE}", headers=headers)).json()["summary"]
    assert summary["total_revenue"] == detailed["convenio_revenue"] == 0.15
    assert summary["amount_to_pay"] == detailed["amount_to_pay"] == 0.05
