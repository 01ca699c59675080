import base64
from reportlab.platypus import Image
from convenio.core.database import AsyncSessionLocal
from convenio.services import identity, pdf_service
from tests.helpers import login, make_user

# 1x1 transparent PNG
PIXEL = base64.b64decode("iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR42mNkYAAAAAYAAjCB0C8AAAAASUVORK5CYII=")


async def new_patient(client, headers, name="Carlos Particular"):
    return (await client.post("/api/private-patients", json={"name": name}, headers=headers)).json()


async def test_record_lifecycle(client, professional):
    _, headers = professional
    patient = await new_patient(client, headers)
    res = await client.post("/api/medical-records", json={
        "private_patient_id": patient["id"],
        "chief_complaint": "Dor lombar",
        "vital_signs": {"blood_pressure": "120/80", "heart_rate": 72},
    }, headers=headers)
    assert res.status_code == 201
    record = res.json()
    assert record["vital_signs"]["heart_rate"] == 72

    res = await client.put(f"/api/medical-records/{record['id']}", json={"diagnosis": "Lombalgia"}, headers=headers)
    assert res.json()["diagnosis"] == "Lombalgia"
    assert res.json()["chief_complaint"] == "Dor lombar"

    listing = (await client.get(f"/api/medical-records?private_patient_id={patient['id']}", headers=headers)).json()
    assert [r["patient_name"] for r in listing] == ["Carlos Particular"]

    assert (await client.delete(f"/api/medical-records/{record['id']}", headers=headers)).status_code == 200
    assert (await client.get(f"/api/medical-records/{record['id']}", headers=headers)).status_code == 404


async def test_vital_signs_must_be_an_object(client, professional):
    _, headers = professional
    patient = await new_patient(client, headers)
    res = await client.post("/api/medical-records", json={
        "private_patient_id": patient["id"], "vital_signs": ["120/80"],
    }, headers=headers)
    assert res.status_code == 400


async def test_records_are_scoped_to_professional(client, professional):
    _, headers = professional
    patient = await new_patient(client, headers)
    record = (await client.post("/api/medical-records", json={"private_patient_id": patient["id"]}, headers=headers)).json()

    other = await make_user(["professional"], name="Dr. Outro")
    other_headers = await login(client, other.national_id, "professional")
    assert (await client.get(f"/api/medical-records/{record['id']}", headers=other_headers)).status_code == 404
    assert (await client.get("/api/medical-records", headers=other_headers)).json() == []
    res = await client.post("/api/medical-records", json={"private_patient_id": patient["id"]}, headers=other_headers)
    assert res.status_code == 404


async def test_generate_document_from_record(client, professional, renderer):
    _, headers = professional
    patient = await new_patient(client, headers)
    record = (await client.post("/api/medical-records", json={
        "private_patient_id": patient["id"], "diagnosis": "Lombalgia",
    }, headers=headers)).json()

    res = await client.post(f"/api/medical-records/{record['id']}/generate-document",
                            json={"template_inputs": {"observations": "Retorno em 15 dias"}}, headers=headers)
    assert res.status_code == 201
    document = res.json()
    assert document["title"] == "Prontuário - Carlos Particular"
    assert document["document_type"] == "medical_record"
    assert document["document_url"] == "https://files.test/medical_record/1.pdf"
    assert document["medical_record_id"] == record["id"]

    kind, inputs = renderer.calls[0]
    assert kind == "medical_record"
    assert inputs["diagnosis"] == "Lombalgia"
    assert inputs["professional_name"] == "Dra. Ana"
    assert inputs["observations"] == "Retorno em 15 dias"


async def test_create_documents(client, professional, renderer):
    _, headers = professional
    patient = await new_patient(client, headers)
    res = await client.post("/api/medical-documents", json={
        "document_type": "certificate",
        "title": "Atestado",
        "private_patient_id": patient["id"],
        "template_data": {"days": 2},
    }, headers=headers)
    assert res.status_code == 201
    assert res.json()["patient_name"] == "Carlos Particular"

    res = await client.post("/api/medical-documents", json={
        "document_type": "prescription", "title": "Receita", "patient_name": "Avulso",
    }, headers=headers)
    assert res.status_code == 201

    res = await client.post("/api/medical-documents", json={
        "document_type": "poem", "title": "X", "patient_name": "Avulso",
    }, headers=headers)
    assert res.status_code == 400
    res = await client.post("/api/medical-documents", json={"document_type": "declaration", "title": "X"}, headers=headers)
    assert res.status_code == 400
    assert len(renderer.calls) == 2

    documents = (await client.get("/api/medical-documents", headers=headers)).json()
    assert {d["title"] for d in documents} == {"Atestado", "Receita"}
    document_id = documents[0]["id"]
    assert (await client.delete(f"/api/medical-documents/{document_id}", headers=headers)).status_code == 200
    assert (await client.delete(f"/api/medical-documents/{document_id}", headers=headers)).status_code == 404


async def test_renderer_failure_is_external_error(client, professional, renderer):
    _, headers = professional

    async def broken(kind, inputs):
        raise RuntimeError("storage down")

    renderer.render = broken
    res = await client.post("/api/medical-documents", json={
        "document_type": "prescription", "title": "Receita", "patient_name": "Avulso",
    }, headers=headers)
    assert res.status_code == 502
    assert res.json()["code"] == "EXTERNAL_SERVICE_FAILED"
    assert (await client.get("/api/medical-documents", headers=headers)).json() == []


async def test_documents_carry_the_professional_signature(client, professional, renderer):
    pro, headers = professional
    async with AsyncSessionLocal() as s:
        stored = await identity.get_user(s, pro.id)
        stored.signature_url = "https://files.test/signatures/ana.png"
        await s.commit()
    patient = await new_patient(client, headers)
    record = (await client.post("/api/medical-records", json={"private_patient_id": patient["id"]}, headers=headers)).json()
    await client.post(f"/api/medical-records/{record['id']}/generate-document", json={}, headers=headers)
    _, inputs = renderer.calls[0]
    assert inputs["signature_url"] == "https://files.test/signatures/ana.png"


def test_signature_image_drawn_above_the_line(tmp_path):
    path = tmp_path / "assinatura.png"
    path.write_bytes(PIXEL)
    elements = pdf_service._signature({"professional_name": "Dra. Ana", "signature_url": str(path)},
                                      pdf_service.getSampleStyleSheet())
    image = elements[1]
    assert isinstance(image, Image)
    assert image.drawWidth <= pdf_service.SIGNATURE_BOX[0]
    assert image.drawHeight <= pdf_service.SIGNATURE_BOX[1]

    pdf = pdf_service.generate_document_pdf("certificate", {
        "patient_name": "Carlos", "professional_name": "Dra. Ana", "signature_url": str(path),
    })
    assert pdf.startswith(b"%PDF")


def test_unreachable_signature_is_skipped(tmp_path):
    inputs = {"professional_name": "Dra. Ana", "signature_url": str(tmp_path / "missing.png")}
    elements = pdf_service._signature(inputs, pdf_service.getSampleStyleSheet())
    assert not any(isinstance(e, Image) for e in elements)
    assert pdf_service.generate_document_pdf("certificate", inputs).startswith(b"%PDF")
