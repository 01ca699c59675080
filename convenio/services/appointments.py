"""Forward-looking schedule of encounters.

Non-cancelled appointments of a professional never share a ``(date, time)``.
The rule is pre-checked here and backed by the partial unique index
``uq_appointments_slot`` created by the bootstrapper.
"""
import logging
from datetime import date as date_type, time as time_type
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.errors import NotFound, SlotConflict, ValidationFailed
from convenio.models.models import Appointment
from convenio.services import access
from convenio.services.catalog import get_service
from convenio.services.locations import get_location
from convenio.services.patient_refs import PatientRef, ref_columns, resolve_patient

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("scheduled", "confirmed")


async def ensure_slot_free(session: AsyncSession, professional_id: int, day: date_type, at: time_type, exclude_id=None):
    q = select(Appointment.id).where(
        Appointment.professional_id == professional_id,
        Appointment.date == day,
        Appointment.time == at,
        Appointment.status != "cancelled",
    )
    if exclude_id:
        q = q.where(Appointment.id != exclude_id)
    if (await session.execute(q.limit(1))).first():
        raise SlotConflict()


async def _flush_slot(session: AsyncSession, appointment: Appointment):
    try:
        async with session.begin_nested():
            session.add(appointment)
    except IntegrityError:
        raise SlotConflict()


async def get_appointment(session: AsyncSession, professional_id: int, appointment_id: int) -> Appointment:
    appointment = (await session.execute(
        select(Appointment).where(
            Appointment.id == appointment_id,
            Appointment.professional_id == professional_id,
        )
    )).scalar()
    if not appointment:
        raise NotFound("Agendamento não encontrado")
    return appointment


async def create_appointment(session: AsyncSession, professional_id: int, ref: PatientRef,
                             day: date_type, at: time_type, service_id: Optional[int] = None,
                             location_id: Optional[int] = None, notes: Optional[str] = None,
                             consultation_id: Optional[int] = None) -> Appointment:
    await access.ensure_scheduling_access(session, professional_id)
    await resolve_patient(session, professional_id, ref)
    if service_id is not None:
        await get_service(session, service_id)
    if location_id is not None:
        await get_location(session, professional_id, location_id)
    await ensure_slot_free(session, professional_id, day, at)

    appointment = Appointment(
        professional_id=professional_id,
        service_id=service_id,
        location_id=location_id,
        consultation_id=consultation_id,
        date=day,
        time=at,
        status="scheduled",
        notes=notes,
        **ref_columns(ref),
    )
    await _flush_slot(session, appointment)
    return appointment


async def update_appointment(session: AsyncSession, professional_id: int, appointment_id: int, changes: dict) -> Appointment:
    await access.ensure_scheduling_access(session, professional_id)
    appointment = await get_appointment(session, professional_id, appointment_id)
    if appointment.status == "cancelled":
        raise ValidationFailed("Agendamento cancelado não pode ser alterado")

    new_date = changes.get("date") or appointment.date
    new_time = changes.get("time") or appointment.time
    if (new_date, new_time) != (appointment.date, appointment.time):
        await ensure_slot_free(session, professional_id, new_date, new_time, exclude_id=appointment.id)
    if changes.get("location_id") is not None:
        await get_location(session, professional_id, changes["location_id"])
    if changes.get("service_id") is not None:
        await get_service(session, changes["service_id"])
    if "status" in changes and changes["status"] not in OPEN_STATUSES + ("completed",):
        raise ValidationFailed("Status inválido")

    for field in ("location_id", "service_id", "notes", "status"):
        if field in changes:
            setattr(appointment, field, changes[field])
    appointment.date = new_date
    appointment.time = new_time
    try:
        await session.flush()
    except IntegrityError:
        raise SlotConflict()
    return appointment


async def cancel_appointment(session: AsyncSession, professional_id: int, appointment_id: int) -> Appointment:
    await access.ensure_scheduling_access(session, professional_id)
    appointment = await get_appointment(session, professional_id, appointment_id)
    appointment.status = "cancelled"
    await session.flush()
    return appointment


async def delete_appointment(session: AsyncSession, professional_id: int, appointment_id: int):
    await access.ensure_scheduling_access(session, professional_id)
    appointment = await get_appointment(session, professional_id, appointment_id)
    await session.delete(appointment)
    await session.flush()


async def list_appointments(session: AsyncSession, professional_id: int,
                            start: Optional[date_type] = None, end: Optional[date_type] = None,
                            include_cancelled: bool = False):
    await access.ensure_scheduling_access(session, professional_id)
    q = select(Appointment).where(Appointment.professional_id == professional_id)
    if start:
        q = q.where(Appointment.date >= start)
    if end:
        q = q.where(Appointment.date <= end)
    if not include_cancelled:
        q = q.where(Appointment.status != "cancelled")
    res = await session.execute(q.order_by(Appointment.date, Appointment.time))
    return res.scalars().all()


def serialize_appointment(a: Appointment) -> dict:
    return {
        "id": a.id,
        "professional_id": a.professional_id,
        "client_id": a.client_id,
        "dependent_id": a.dependent_id,
        "private_patient_id": a.private_patient_id,
        "service_id": a.service_id,
        "location_id": a.location_id,
        "consultation_id": a.consultation_id,
        "date": a.date.isoformat(),
        "time": a.time.strftime("%H:%M"),
        "status": a.status,
        "notes": a.notes,
    }
