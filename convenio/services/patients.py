"""Dependents (owned by clients) and private patients (owned by professionals)."""
import logging
from typing import Optional
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core import config
from convenio.core.errors import (
    DuplicateIdentifier, Forbidden, InUse, NotFound, QuotaExceeded, ValidationFailed,
)
from convenio.core.security import CurrentUser
from convenio.models.models import (
    Appointment, Consultation, Dependent, DependentPayment, MedicalDocument,
    MedicalRecord, PrivatePatient, User,
)
from convenio.services.identity import ensure_national_id_free, normalize_national_id

logger = logging.getLogger(__name__)

PRIVATE_PATIENT_FIELDS = (
    "name", "email", "phone", "birth_date", "address", "address_number",
    "address_complement", "neighborhood", "city", "state", "zip_code",
)


# Dependents

async def _get_dependent(session: AsyncSession, dependent_id: int) -> Dependent:
    dependent = (await session.execute(select(Dependent).where(Dependent.id == dependent_id))).scalar()
    if not dependent:
        raise NotFound("Dependente não encontrado")
    return dependent


def _ensure_dependent_owner(actor: CurrentUser, dependent: Dependent):
    if actor.is_admin:
        return
    if actor.current_role != "client" or dependent.client_id != actor.id:
        raise Forbidden()


async def get_dependent(session: AsyncSession, actor: CurrentUser, dependent_id: int) -> Dependent:
    dependent = await _get_dependent(session, dependent_id)
    _ensure_dependent_owner(actor, dependent)
    return dependent


async def count_dependents(session: AsyncSession, client_id: int) -> int:
    res = await session.execute(select(func.count(Dependent.id)).where(Dependent.client_id == client_id))
    return res.scalar() or 0


async def create_dependent(session: AsyncSession, actor: CurrentUser, client_id: int, name: str,
                           national_id, birth_date=None) -> Dependent:
    if not actor.is_admin and actor.id != client_id:
        raise Forbidden()
    if not (name or "").strip():
        raise ValidationFailed("Nome é obrigatório")
    cpf = normalize_national_id(national_id)

    client = (await session.execute(select(User).where(User.id == client_id))).scalar()
    if not client or not client.has_role("client"):
        raise NotFound("Cliente não encontrado")
    if await count_dependents(session, client_id) >= config.MAX_DEPENDENTS:
        raise QuotaExceeded()
    await ensure_national_id_free(session, cpf)

    dependent = Dependent(
        client_id=client_id,
        name=name.strip(),
        national_id=cpf,
        birth_date=birth_date,
        subscription_status="pending",
        billing_amount=config.DEPENDENT_PRICE,
    )
    session.add(dependent)
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateIdentifier()
    logger.info("Dependent %s created for client %s", dependent.id, client_id)
    return dependent


async def update_dependent(session: AsyncSession, actor: CurrentUser, dependent_id: int,
                           name: Optional[str] = None, birth_date=None) -> Dependent:
    dependent = await get_dependent(session, actor, dependent_id)
    if name is not None:
        if not name.strip():
            raise ValidationFailed("Nome é obrigatório")
        dependent.name = name.strip()
    if birth_date is not None:
        dependent.birth_date = birth_date
    await session.flush()
    return dependent


async def delete_dependent(session: AsyncSession, actor: CurrentUser, dependent_id: int):
    dependent = await get_dependent(session, actor, dependent_id)
    in_use = (await session.execute(
        select(Consultation.id).where(Consultation.dependent_id == dependent.id).limit(1)
    )).first()
    if in_use:
        raise InUse("Dependente possui consultas registradas")
    await session.execute(delete(Appointment).where(Appointment.dependent_id == dependent.id))
    await session.execute(delete(DependentPayment).where(DependentPayment.dependent_id == dependent.id))
    await session.delete(dependent)
    await session.flush()


async def list_dependents(session: AsyncSession, actor: CurrentUser, client_id: int):
    if not actor.is_admin and actor.id != client_id:
        raise Forbidden()
    res = await session.execute(
        select(Dependent).where(Dependent.client_id == client_id).order_by(Dependent.name)
    )
    return res.scalars().all()


async def list_all_dependents(session: AsyncSession):
    res = await session.execute(
        select(Dependent, User.name)
        .join(User, Dependent.client_id == User.id)
        .order_by(Dependent.name)
    )
    return res.all()


async def lookup_dependent(session: AsyncSession, national_id):
    """Returns ``(dependent, client)`` for a CPF."""
    cpf = normalize_national_id(national_id)
    row = (await session.execute(
        select(Dependent, User)
        .join(User, Dependent.client_id == User.id)
        .where(Dependent.national_id == cpf)
    )).first()
    if not row:
        raise NotFound("Dependente não encontrado")
    return row


def serialize_dependent(dependent: Dependent, client_name: Optional[str] = None) -> dict:
    data = {
        "id": dependent.id,
        "client_id": dependent.client_id,
        "name": dependent.name,
        "national_id": dependent.national_id,
        "birth_date": dependent.birth_date.isoformat() if dependent.birth_date else None,
        "subscription_status": dependent.subscription_status,
        "subscription_expiry": dependent.subscription_expiry.isoformat() if dependent.subscription_expiry else None,
        "billing_amount": float(dependent.billing_amount) if dependent.billing_amount is not None else None,
        "activated_at": dependent.activated_at.isoformat() if dependent.activated_at else None,
    }
    if client_name is not None:
        data["client_name"] = client_name
    return data


# Private patients

async def get_private_patient(session: AsyncSession, professional_id: int, patient_id: int) -> PrivatePatient:
    # Another professional's patient is reported as missing
    patient = (await session.execute(
        select(PrivatePatient).where(
            PrivatePatient.id == patient_id,
            PrivatePatient.professional_id == professional_id,
        )
    )).scalar()
    if not patient:
        raise NotFound("Paciente não encontrado")
    return patient


async def _ensure_private_national_id_free(session, professional_id, cpf, exclude_id=None):
    q = select(PrivatePatient.id).where(
        PrivatePatient.professional_id == professional_id,
        PrivatePatient.national_id == cpf,
    )
    if exclude_id:
        q = q.where(PrivatePatient.id != exclude_id)
    if (await session.execute(q)).first():
        raise DuplicateIdentifier("Já existe um paciente com este CPF")


async def list_private_patients(session: AsyncSession, professional_id: int):
    res = await session.execute(
        select(PrivatePatient)
        .where(PrivatePatient.professional_id == professional_id)
        .order_by(PrivatePatient.name)
    )
    return res.scalars().all()


async def create_private_patient(session: AsyncSession, professional_id: int, data: dict) -> PrivatePatient:
    if not (data.get("name") or "").strip():
        raise ValidationFailed("Nome é obrigatório")
    cpf = normalize_national_id(data["national_id"]) if data.get("national_id") else None
    if cpf:
        await _ensure_private_national_id_free(session, professional_id, cpf)

    patient = PrivatePatient(
        professional_id=professional_id,
        national_id=cpf,
        **{k: data.get(k) for k in PRIVATE_PATIENT_FIELDS},
    )
    session.add(patient)
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateIdentifier("Já existe um paciente com este CPF")
    return patient


async def update_private_patient(session: AsyncSession, professional_id: int, patient_id: int, changes: dict) -> PrivatePatient:
    patient = await get_private_patient(session, professional_id, patient_id)
    if "name" in changes and not (changes.get("name") or "").strip():
        raise ValidationFailed("Nome é obrigatório")
    if "national_id" in changes:
        cpf = normalize_national_id(changes["national_id"]) if changes["national_id"] else None
        if cpf:
            await _ensure_private_national_id_free(session, professional_id, cpf, exclude_id=patient.id)
        patient.national_id = cpf
    for field in PRIVATE_PATIENT_FIELDS:
        if field in changes:
            setattr(patient, field, changes[field])
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateIdentifier("Já existe um paciente com este CPF")
    return patient


async def delete_private_patient(session: AsyncSession, professional_id: int, patient_id: int):
    patient = await get_private_patient(session, professional_id, patient_id)
    in_use = (await session.execute(
        select(Consultation.id).where(Consultation.private_patient_id == patient.id).limit(1)
    )).first()
    if in_use:
        raise InUse("Paciente possui consultas registradas")
    await session.execute(delete(Appointment).where(Appointment.private_patient_id == patient.id))
    await session.execute(delete(MedicalRecord).where(MedicalRecord.private_patient_id == patient.id))
    await session.execute(
        update(MedicalDocument).where(MedicalDocument.private_patient_id == patient.id).values(private_patient_id=None)
    )
    await session.delete(patient)
    await session.flush()


def serialize_private_patient(patient: PrivatePatient) -> dict:
    data = {k: getattr(patient, k) for k in PRIVATE_PATIENT_FIELDS}
    data["birth_date"] = patient.birth_date.isoformat() if patient.birth_date else None
    data.update({
        "id": patient.id,
        "professional_id": patient.professional_id,
        "national_id": patient.national_id,
    })
    return data
