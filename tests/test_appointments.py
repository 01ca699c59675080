from datetime import timedelta
from convenio.core.database import utc_now
from tests.helpers import grant_access, login, make_user


def slot(client_id, day="2030-04-01", at="09:00"):
    return {"client_id": client_id, "date": day, "time": at}


async def test_calendar_requires_scheduling_access(client, professional, active_client):
    _, headers = professional
    user, _ = active_client
    res = await client.post("/api/appointments", json=slot(user.id), headers=headers)
    assert res.status_code == 403
    assert res.json()["code"] == "SCHEDULING_ACCESS_EXPIRED"
    assert (await client.get("/api/appointments", headers=headers)).status_code == 403

    status = (await client.get("/api/scheduling-access/status", headers=headers)).json()
    assert status["has_access"] is False


async def test_slot_conflict_and_release(client, professional, active_client):
    pro, headers = professional
    user, _ = active_client
    await grant_access(pro.id)

    first = await client.post("/api/appointments", json=slot(user.id), headers=headers)
    assert first.status_code == 201
    clash = await client.post("/api/appointments", json=slot(user.id), headers=headers)
    assert clash.status_code == 409
    assert clash.json()["code"] == "SLOT_CONFLICT"

    res = await client.put(f"/api/appointments/{first.json()['id']}/cancel", headers=headers)
    assert res.json()["status"] == "cancelled"
    assert (await client.post("/api/appointments", json=slot(user.id), headers=headers)).status_code == 201

    listing = (await client.get("/api/appointments", headers=headers)).json()
    assert len(listing) == 1
    listing = (await client.get("/api/appointments?include_cancelled=true", headers=headers)).json()
    assert len(listing) == 2


async def test_move_appointment(client, professional, active_client):
    pro, headers = professional
    user, _ = active_client
    await grant_access(pro.id)
    a = (await client.post("/api/appointments", json=slot(user.id, at="09:00"), headers=headers)).json()
    b = (await client.post("/api/appointments", json=slot(user.id, at="10:00"), headers=headers)).json()

    res = await client.put(f"/api/appointments/{b['id']}", json={"time": "09:00"}, headers=headers)
    assert res.status_code == 409
    res = await client.put(f"/api/appointments/{b['id']}", json={"time": "11:30", "notes": "Retorno"}, headers=headers)
    assert res.json()["time"] == "11:30"
    assert res.json()["notes"] == "Retorno"

    assert (await client.delete(f"/api/appointments/{a['id']}", headers=headers)).status_code == 200


async def test_appointments_are_per_professional(client, professional, active_client):
    pro, headers = professional
    user, _ = active_client
    await grant_access(pro.id)
    a = (await client.post("/api/appointments", json=slot(user.id), headers=headers)).json()

    other = await make_user(["professional"], name="Dr. Outro")
    await grant_access(other.id)
    other_headers = await login(client, other.national_id, "professional")
    # Different professionals may share a slot
    assert (await client.post("/api/appointments", json=slot(user.id), headers=other_headers)).status_code == 201
    assert (await client.put(f"/api/appointments/{a['id']}/cancel", headers=other_headers)).status_code == 404


async def test_admin_grants_and_revokes_access(client, professional, admin_headers, active_client):
    pro, headers = professional
    user, _ = active_client
    expires = (utc_now() + timedelta(days=10)).isoformat()

    res = await client.post("/api/admin/grant-scheduling-access", json={
        "professional_id": pro.id, "expires_at": expires, "reason": "Cortesia",
    }, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["has_access"] is True

    status = (await client.get("/api/scheduling-access/status", headers=headers)).json()
    assert status["has_access"] is True
    assert status["reason"] == "Cortesia"
    overview = (await client.get("/api/admin/scheduling-access", headers=admin_headers)).json()
    assert [p["has_access"] for p in overview if p["professional_id"] == pro.id] == [True]

    assert (await client.post("/api/appointments", json=slot(user.id), headers=headers)).status_code == 201

    res = await client.post("/api/admin/revoke-scheduling-access", json={"professional_id": pro.id}, headers=admin_headers)
    assert res.status_code == 200
    assert (await client.get("/api/appointments", headers=headers)).status_code == 403
    res = await client.post("/api/admin/revoke-scheduling-access", json={"professional_id": pro.id}, headers=admin_headers)
    assert res.status_code == 404

    notes = (await client.get("/api/notifications", headers=headers)).json()
    assert {n["type"] for n in notes} == {"scheduling_access"}
    assert (await client.put("/api/notifications/read-all", headers=headers)).status_code == 200
    assert not any(n["is_read"] is False for n in (await client.get("/api/notifications", headers=headers)).json())


async def test_grant_rejects_past_expiry_and_non_professionals(client, admin_headers, active_client, professional):
    user, _ = active_client
    pro, _ = professional
    past = (utc_now() - timedelta(days=1)).isoformat()
    res = await client.post("/api/admin/grant-scheduling-access", json={"professional_id": pro.id, "expires_at": past}, headers=admin_headers)
    assert res.status_code == 400
    future = (utc_now() + timedelta(days=1)).isoformat()
    res = await client.post("/api/admin/grant-scheduling-access", json={"professional_id": user.id, "expires_at": future}, headers=admin_headers)
    assert res.status_code == 404


async def test_admin_routes_need_admin(client, professional):
    _, headers = professional
    assert (await client.get("/api/admin/scheduling-access", headers=headers)).status_code == 403


async def test_admin_books_appointment_for_professional(client, professional, admin_headers, active_client):
    pro, headers = professional
    user, _ = active_client
    await grant_access(pro.id)
    res = await client.post("/api/appointments", json={**slot(user.id), "professional_id": pro.id}, headers=admin_headers)
    assert res.status_code == 201
    assert res.json()["professional_id"] == pro.id
    assert len((await client.get("/api/appointments", headers=headers)).json()) == 1


async def test_mark_single_notification_read(client, professional):
    pro, headers = professional
    await grant_access(pro.id)
    note = (await client.get("/api/notifications", headers=headers)).json()[0]
    assert note["is_read"] is False
    assert (await client.put(f"/api/notifications/{note['id']}/read", headers=headers)).status_code == 200
    assert (await client.put("/api/notifications/9999/read", headers=headers)).status_code == 404
