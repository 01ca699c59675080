from typing import Optional
from fastapi import APIRouter, Depends
from convenio.api.schemas import GenerateDocumentRequest, MedicalDocumentCreate, MedicalRecordCreate, MedicalRecordFields
from convenio.core.database import AsyncSessionLocal
from convenio.core.security import CurrentUser, require_roles
from convenio.services import medical
from convenio.services.pdf_service import get_document_renderer

router = APIRouter(prefix="/api", tags=["Medical"])

professional_only = require_roles("professional")


@router.get("/medical-records")
async def list_records(private_patient_id: Optional[int] = None, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        rows = await medical.list_records(session, user.id, private_patient_id)
        return [medical.serialize_record(r, patient_name) for r, patient_name in rows]


@router.get("/medical-records/{record_id}")
async def get_record(record_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        return medical.serialize_record(await medical.get_record(session, user.id, record_id))


@router.post("/medical-records", status_code=201)
async def create_record(body: MedicalRecordCreate, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        record = await medical.create_record(
            session, user.id, body.private_patient_id, body.model_dump(exclude={"private_patient_id"})
        )
        await session.commit()
        return medical.serialize_record(record)


@router.put("/medical-records/{record_id}")
async def update_record(record_id: int, body: MedicalRecordFields, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        record = await medical.update_record(session, user.id, record_id, body.model_dump(exclude_unset=True))
        await session.commit()
        return medical.serialize_record(record)


@router.delete("/medical-records/{record_id}")
async def delete_record(record_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        await medical.delete_record(session, user.id, record_id)
        await session.commit()
        return {"message": "Prontuário excluído com sucesso"}


@router.post("/medical-records/{record_id}/generate-document", status_code=201)
async def generate_document(record_id: int, body: GenerateDocumentRequest,
                            user: CurrentUser = Depends(professional_only), renderer=Depends(get_document_renderer)):
    async with AsyncSessionLocal() as session:
        document = await medical.generate_document(session, user.id, record_id, body.template_inputs, renderer)
        await session.commit()
        return medical.serialize_document(document)


@router.get("/medical-documents")
async def list_documents(private_patient_id: Optional[int] = None, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        return [medical.serialize_document(d) for d in await medical.list_documents(session, user.id, private_patient_id)]


@router.post("/medical-documents", status_code=201)
async def create_document(body: MedicalDocumentCreate, user: CurrentUser = Depends(professional_only),
                          renderer=Depends(get_document_renderer)):
    async with AsyncSessionLocal() as session:
        document = await medical.create_document(
            session, user, body.document_type, body.title, body.template_data, renderer,
            private_patient_id=body.private_patient_id,
            patient_name=body.patient_name,
        )
        await session.commit()
        return medical.serialize_document(document)


@router.delete("/medical-documents/{document_id}")
async def delete_document(document_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        await medical.delete_document(session, user.id, document_id)
        await session.commit()
        return {"message": "Documento excluído com sucesso"}
