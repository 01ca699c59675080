from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends
from convenio.api.schemas import (
    CancelRequest, ConsultationCreate, ConsultationUpdate, RecurringConsultationCreate,
    RescheduleRequest, StatusUpdate,
)
from convenio.core.database import AsyncSessionLocal, to_naive_utc
from convenio.core.security import CurrentUser, acting_professional, get_current_user, require_roles
from convenio.services import consultations
from convenio.services.appointments import serialize_appointment
from convenio.services.patient_refs import patient_ref

router = APIRouter(prefix="/api/consultations", tags=["Consultations"])

staff = require_roles("professional", "admin")


@router.get("")
async def list_consultations(start_date: Optional[date] = None, end_date: Optional[date] = None,
                             status: Optional[str] = None, user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        return await consultations.list_consultations(session, user, start_date, end_date, status)


@router.post("", status_code=201)
async def create_consultation(body: ConsultationCreate, user: CurrentUser = Depends(staff)):
    professional_id = acting_professional(user, body.professional_id)
    ref = patient_ref(body.client_id, body.dependent_id, body.private_patient_id)
    when = to_naive_utc(body.date)
    # Appointments keep the caller's wall-clock slot
    local = body.date.replace(tzinfo=None)
    slot = (local.date(), local.time()) if body.create_appointment else None
    async with AsyncSessionLocal() as session:
        result = await consultations.create_consultation(
            session, professional_id, ref, body.service_id, body.value, when,
            location_id=body.location_id,
            notes=body.notes,
            status=body.status,
            appointment_slot=slot,
        )
        await session.commit()
        data = consultations.serialize_consultation(result.consultation)
        data["appointment"] = serialize_appointment(result.appointment) if result.appointment else None
        if result.appointment_error:
            data["appointment_error"] = result.appointment_error
        return data


@router.post("/recurring", status_code=201)
async def create_recurring(body: RecurringConsultationCreate, user: CurrentUser = Depends(staff)):
    professional_id = acting_professional(user, body.professional_id)
    ref = patient_ref(body.client_id, body.dependent_id, body.private_patient_id)
    async with AsyncSessionLocal() as session:
        result = await consultations.create_recurring(
            session, professional_id, ref, body.service_id, body.value,
            body.start_date, body.start_time, body.recurrence_type,
            interval=body.interval,
            occurrences=body.occurrences,
            end_date=body.end_date,
            location_id=body.location_id,
            notes=body.notes,
            timezone_offset=body.timezone_offset,
        )
        await session.commit()
        return {
            "created_count": len(result.created),
            "skipped_count": len(result.skipped),
            "consultations": [consultations.serialize_consultation(c) for c in result.created],
            "skipped_dates": [d.isoformat() for d in result.skipped],
        }


@router.get("/{consultation_id}")
async def get_consultation(consultation_id: int, user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        return await consultations.get_consultation_detail(session, user, consultation_id)


@router.put("/{consultation_id}")
async def update_consultation(consultation_id: int, body: ConsultationUpdate, user: CurrentUser = Depends(staff)):
    async with AsyncSessionLocal() as session:
        consultation = await consultations.update_consultation(
            session, user, consultation_id, body.model_dump(exclude_unset=True)
        )
        await session.commit()
        return consultations.serialize_consultation(consultation)


@router.put("/{consultation_id}/status")
async def update_status(consultation_id: int, body: StatusUpdate, user: CurrentUser = Depends(staff)):
    async with AsyncSessionLocal() as session:
        consultation = await consultations.update_status(session, user, consultation_id, body.status, body.reason)
        await session.commit()
        return consultations.serialize_consultation(consultation)


@router.put("/{consultation_id}/cancel")
async def cancel_consultation(consultation_id: int, body: CancelRequest, user: CurrentUser = Depends(staff)):
    async with AsyncSessionLocal() as session:
        consultation = await consultations.cancel_consultation(session, user, consultation_id, body.reason)
        await session.commit()
        return consultations.serialize_consultation(consultation)


@router.put("/{consultation_id}/reschedule")
async def reschedule(consultation_id: int, body: RescheduleRequest, user: CurrentUser = Depends(staff)):
    async with AsyncSessionLocal() as session:
        consultation = await consultations.reschedule(session, user, consultation_id, body.date)
        await session.commit()
        return consultations.serialize_consultation(consultation)


@router.delete("/{consultation_id}")
async def delete_consultation(consultation_id: int, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        await consultations.delete_consultation(session, consultation_id)
        await session.commit()
        return {"message": "Consulta excluída com sucesso"}


@router.get("/{consultation_id}/whatsapp")
async def whatsapp(consultation_id: int, user: CurrentUser = Depends(staff)):
    async with AsyncSessionLocal() as session:
        return {"url": await consultations.whatsapp_link(session, user, consultation_id)}
