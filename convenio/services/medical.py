"""Clinical records of private patients and the documents generated from them.

Everything is scoped to the owning professional; another professional's
rows are reported as missing.
"""
import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.errors import ConvenioError, ExternalServiceFailed, NotFound, ValidationFailed
from convenio.core.security import CurrentUser
from convenio.models.models import MedicalDocument, MedicalRecord, PrivatePatient, User
from convenio.services.patients import get_private_patient

logger = logging.getLogger(__name__)

RECORD_FIELDS = (
    "chief_complaint", "history_present_illness", "past_medical_history",
    "medications", "allergies", "physical_examination", "diagnosis",
    "treatment_plan", "notes",
)
DOCUMENT_KINDS = ("medical_record", "certificate", "prescription", "exam_request", "declaration", "referral", "other")


def _check_vital_signs(vital_signs):
    if vital_signs is not None and not isinstance(vital_signs, dict):
        raise ValidationFailed("Sinais vitais devem ser um objeto")


async def list_records(session: AsyncSession, professional_id: int, private_patient_id: Optional[int] = None):
    q = (
        select(MedicalRecord, PrivatePatient.name)
        .join(PrivatePatient, MedicalRecord.private_patient_id == PrivatePatient.id)
        .where(MedicalRecord.professional_id == professional_id)
    )
    if private_patient_id:
        q = q.where(MedicalRecord.private_patient_id == private_patient_id)
    res = await session.execute(q.order_by(MedicalRecord.created_at.desc(), MedicalRecord.id.desc()))
    return res.all()


async def get_record(session: AsyncSession, professional_id: int, record_id: int) -> MedicalRecord:
    record = (await session.execute(
        select(MedicalRecord).where(
            MedicalRecord.id == record_id,
            MedicalRecord.professional_id == professional_id,
        )
    )).scalar()
    if not record:
        raise NotFound("Prontuário não encontrado")
    return record


async def create_record(session: AsyncSession, professional_id: int, private_patient_id: int, data: dict) -> MedicalRecord:
    await get_private_patient(session, professional_id, private_patient_id)
    _check_vital_signs(data.get("vital_signs"))
    record = MedicalRecord(
        professional_id=professional_id,
        private_patient_id=private_patient_id,
        vital_signs=data.get("vital_signs"),
        **{k: data.get(k) for k in RECORD_FIELDS},
    )
    session.add(record)
    await session.flush()
    return record


async def update_record(session: AsyncSession, professional_id: int, record_id: int, changes: dict) -> MedicalRecord:
    record = await get_record(session, professional_id, record_id)
    if "vital_signs" in changes:
        _check_vital_signs(changes["vital_signs"])
        record.vital_signs = changes["vital_signs"]
    for field in RECORD_FIELDS:
        if field in changes:
            setattr(record, field, changes[field])
    await session.flush()
    return record


async def delete_record(session: AsyncSession, professional_id: int, record_id: int):
    record = await get_record(session, professional_id, record_id)
    await session.delete(record)
    await session.flush()


async def _render(renderer, kind: str, inputs: dict) -> str:
    try:
        rendered = await renderer.render(kind, inputs)
    except ConvenioError:
        raise
    except Exception as e:
        logger.error("Document renderer failed for %s: %s", kind, e)
        raise ExternalServiceFailed("Falha ao gerar documento") from e
    return rendered["url"]


async def _professional(session: AsyncSession, professional_id: int) -> User:
    return (await session.execute(select(User).where(User.id == professional_id))).scalar()


async def generate_document(session: AsyncSession, professional_id: int, record_id: int,
                            template_inputs: Optional[dict], renderer) -> MedicalDocument:
    record = await get_record(session, professional_id, record_id)
    patient = await get_private_patient(session, professional_id, record.private_patient_id)
    professional = await _professional(session, professional_id)

    inputs = {k: getattr(record, k) for k in RECORD_FIELDS}
    inputs.update({
        "vital_signs": record.vital_signs or {},
        "patient_name": patient.name,
        "professional_name": professional.name if professional else None,
        "professional_registry": professional.crm if professional else None,
        "signature_url": professional.signature_url if professional else None,
        "record_date": record.created_at.strftime("%d/%m/%Y") if record.created_at else None,
    })
    inputs.update(template_inputs or {})

    url = await _render(renderer, "medical_record", inputs)
    document = MedicalDocument(
        professional_id=professional_id,
        private_patient_id=patient.id,
        medical_record_id=record.id,
        patient_name=patient.name,
        title=f"Prontuário - {patient.name}",
        document_type="medical_record",
        document_url=url,
        template_data=inputs,
    )
    session.add(document)
    await session.flush()
    logger.info("Document %s generated from record %s", document.id, record.id)
    return document


async def create_document(session: AsyncSession, actor: CurrentUser, kind: str, title: str,
                          inputs: Optional[dict], renderer, private_patient_id: Optional[int] = None,
                          patient_name: Optional[str] = None) -> MedicalDocument:
    if kind not in DOCUMENT_KINDS:
        raise ValidationFailed("Tipo de documento inválido")
    if not (title or "").strip():
        raise ValidationFailed("Título é obrigatório")
    if private_patient_id:
        patient = await get_private_patient(session, actor.id, private_patient_id)
        patient_name = patient.name
    if not patient_name:
        raise ValidationFailed("Informe o paciente")

    professional = await _professional(session, actor.id)
    data = dict(inputs or {})
    data.setdefault("patient_name", patient_name)
    data.setdefault("professional_name", professional.name if professional else actor.name)
    data.setdefault("professional_registry", professional.crm if professional else None)
    data.setdefault("signature_url", professional.signature_url if professional else None)
    data.setdefault("title", title)

    url = await _render(renderer, kind, data)
    document = MedicalDocument(
        professional_id=actor.id,
        private_patient_id=private_patient_id,
        patient_name=patient_name,
        title=title.strip(),
        document_type=kind,
        document_url=url,
        template_data=data,
    )
    session.add(document)
    await session.flush()
    return document


async def list_documents(session: AsyncSession, professional_id: int, private_patient_id: Optional[int] = None):
    q = select(MedicalDocument).where(MedicalDocument.professional_id == professional_id)
    if private_patient_id:
        q = q.where(MedicalDocument.private_patient_id == private_patient_id)
    res = await session.execute(q.order_by(MedicalDocument.created_at.desc(), MedicalDocument.id.desc()))
    return res.scalars().all()


async def delete_document(session: AsyncSession, professional_id: int, document_id: int):
    document = (await session.execute(
        select(MedicalDocument).where(
            MedicalDocument.id == document_id,
            MedicalDocument.professional_id == professional_id,
        )
    )).scalar()
    if not document:
        raise NotFound("Documento não encontrado")
    await session.delete(document)
    await session.flush()


def serialize_record(record: MedicalRecord, patient_name: Optional[str] = None) -> dict:
    data = {k: getattr(record, k) for k in RECORD_FIELDS}
    data.update({
        "id": record.id,
        "professional_id": record.professional_id,
        "private_patient_id": record.private_patient_id,
        "patient_name": patient_name,
        "vital_signs": record.vital_signs or {},
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    })
    return data


def serialize_document(d: MedicalDocument) -> dict:
    return {
        "id": d.id,
        "title": d.title,
        "document_type": d.document_type,
        "document_url": d.document_url,
        "patient_name": d.patient_name,
        "private_patient_id": d.private_patient_id,
        "medical_record_id": d.medical_record_id,
        "template_data": d.template_data,
        "created_at": d.created_at.isoformat() if d.created_at else None,
    }
