"""Consultation ledger.

Each consultation references exactly one patient (client, dependent or
private patient). Clients and dependents must hold an active subscription at
the point of sale. Status follows::

    scheduled -> confirmed -> completed
    (any non-cancelled) -> cancelled

``completed`` and ``cancelled`` are never re-entered.
"""
import calendar
import logging
from dataclasses import dataclass, field
from datetime import date as date_type, datetime, time as time_type, timedelta
from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Optional, Tuple
from urllib.parse import quote
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from convenio.core.database import to_naive_utc, utc_now
from convenio.core.errors import ConvenioError, Forbidden, NotFound, SlotConflict, ValidationFailed
from convenio.core.security import CurrentUser
from convenio.models.models import (
    Appointment, AttendanceLocation, Consultation, Dependent, PrivatePatient, Service, User,
)
from convenio.services import appointments
from convenio.services.catalog import get_service, to_money
from convenio.services.locations import get_location
from convenio.services.patient_refs import (
    ClientRef, DependentRef, PatientRef, PrivatePatientRef, ref_columns, resolve_patient,
)

logger = logging.getLogger(__name__)

TRANSITIONS = {
    "scheduled": {"confirmed", "completed", "cancelled"},
    "confirmed": {"completed", "cancelled"},
    "completed": {"cancelled"},
    "cancelled": set(),
}
CREATE_STATUSES = ("scheduled", "confirmed", "completed")
RESCHEDULABLE = ("scheduled", "confirmed")
RECURRENCE_TYPES = ("daily", "weekly", "monthly")
MAX_OCCURRENCES = 365
CENT = Decimal("0.01")


def split_revenue(value, percentage: int) -> Tuple[Decimal, Decimal]:
    """Split ``value`` into ``(professional_take, clinic_take)``.

    Works in integer cents: the professional share is rounded half-to-even
    and the clinic gets the remainder, so both always add up to ``value``.
    """
    cents = int((Decimal(str(value)) * 100).to_integral_value(ROUND_HALF_EVEN))
    pct = Decimal(int(percentage or 0))
    professional_cents = int((Decimal(cents) * pct / 100).to_integral_value(ROUND_HALF_EVEN))
    clinic_cents = cents - professional_cents
    return (Decimal(professional_cents) * CENT, Decimal(clinic_cents) * CENT)


def _check_value(value) -> Decimal:
    amount = to_money(value)
    if amount <= 0:
        raise ValidationFailed("Valor deve ser maior que zero")
    return amount


def _check_professional(actor: CurrentUser, consultation: Consultation):
    if actor.is_admin:
        return
    if actor.current_role != "professional" or consultation.professional_id != actor.id:
        raise Forbidden()


async def _get(session: AsyncSession, consultation_id: int) -> Consultation:
    consultation = (await session.execute(select(Consultation).where(Consultation.id == consultation_id))).scalar()
    if not consultation:
        raise NotFound("Consulta não encontrada")
    return consultation


async def _ensure_no_overlap(session: AsyncSession, professional_id: int, when: datetime, exclude_id=None):
    q = select(Consultation.id).where(
        Consultation.professional_id == professional_id,
        Consultation.date == when,
        Consultation.status != "cancelled",
    )
    if exclude_id:
        q = q.where(Consultation.id != exclude_id)
    if (await session.execute(q.limit(1))).first():
        raise SlotConflict("Já existe uma consulta neste horário")


async def _validate_sale(session, professional_id, ref, service_id, value, location_id):
    await get_service(session, service_id)
    amount = _check_value(value)
    if location_id is not None:
        await get_location(session, professional_id, location_id)
    patient = await resolve_patient(session, professional_id, ref, require_subscription=True)
    return amount, patient


@dataclass
class BookingResult:
    consultation: Consultation
    appointment: Optional[Appointment] = None
    appointment_error: Optional[str] = None


async def create_consultation(session: AsyncSession, professional_id: int, ref: PatientRef, service_id: int,
                              value, when: datetime, location_id: Optional[int] = None,
                              notes: Optional[str] = None, status: str = "completed",
                              appointment_slot: Optional[Tuple[date_type, time_type]] = None) -> BookingResult:
    """Record one encounter, optionally with its appointment.

    The appointment is advisory: when it cannot be created the consultation
    is still recorded and the reason is returned in ``appointment_error``.
    """
    if status not in CREATE_STATUSES:
        raise ValidationFailed("Status inválido para nova consulta")
    amount, _ = await _validate_sale(session, professional_id, ref, service_id, value, location_id)

    consultation = Consultation(
        professional_id=professional_id,
        service_id=service_id,
        location_id=location_id,
        value=amount,
        date=to_naive_utc(when),
        status=status,
        notes=notes,
        **ref_columns(ref),
    )
    session.add(consultation)
    await session.flush()
    result = BookingResult(consultation)

    if appointment_slot:
        day, at = appointment_slot
        try:
            result.appointment = await appointments.create_appointment(
                session, professional_id, ref, day, at,
                service_id=service_id, location_id=location_id, notes=notes,
                consultation_id=consultation.id,
            )
        except ConvenioError as e:
            logger.warning("Consultation %s recorded without appointment: %s", consultation.id, e.code)
            result.appointment_error = e.message

    logger.info("Consultation %s created by professional %s", consultation.id, professional_id)
    return result


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def recurrence_dates(start: datetime, recurrence_type: str, interval: int = 1,
                     occurrences: Optional[int] = None, end_date: Optional[date_type] = None) -> List[datetime]:
    if recurrence_type not in RECURRENCE_TYPES:
        raise ValidationFailed("Tipo de recorrência inválido")
    if interval < 1:
        raise ValidationFailed("Intervalo deve ser maior que zero")
    if occurrences is None and end_date is None:
        raise ValidationFailed("Informe o número de ocorrências ou a data final")
    if occurrences is not None and not 0 <= occurrences <= MAX_OCCURRENCES:
        raise ValidationFailed(f"Número de ocorrências deve estar entre 0 e {MAX_OCCURRENCES}")

    limit = MAX_OCCURRENCES if occurrences is None else occurrences
    dates = []
    step = 0
    while len(dates) < limit:
        if recurrence_type == "daily":
            current = start + timedelta(days=step * interval)
        elif recurrence_type == "weekly":
            current = start + timedelta(weeks=step * interval)
        else:
            current = _add_months(start, step * interval)
        if end_date is not None and current.date() > end_date:
            break
        dates.append(current)
        step += 1
    return dates


@dataclass
class RecurringResult:
    created: List[Consultation] = field(default_factory=list)
    skipped: List[datetime] = field(default_factory=list)


async def create_recurring(session: AsyncSession, professional_id: int, ref: PatientRef, service_id: int,
                           value, start_date: date_type, start_time: time_type, recurrence_type: str,
                           interval: int = 1, occurrences: Optional[int] = None,
                           end_date: Optional[date_type] = None, location_id: Optional[int] = None,
                           notes: Optional[str] = None, timezone_offset: Optional[int] = None) -> RecurringResult:
    """Create a series of ``scheduled`` consultations.

    ``timezone_offset`` follows the browser convention: minutes to add to the
    local time to obtain UTC. Occurrences that would overlap an existing
    consultation are skipped.
    """
    local_start = datetime.combine(start_date, start_time)
    dates = recurrence_dates(local_start, recurrence_type, interval, occurrences, end_date)
    result = RecurringResult()
    if not dates:
        return result

    amount, _ = await _validate_sale(session, professional_id, ref, service_id, value, location_id)
    shift = timedelta(minutes=timezone_offset or 0)

    for local in dates:
        when = local + shift
        try:
            await _ensure_no_overlap(session, professional_id, when)
            consultation = Consultation(
                professional_id=professional_id,
                service_id=service_id,
                location_id=location_id,
                value=amount,
                date=when,
                status="scheduled",
                notes=notes,
                **ref_columns(ref),
            )
            async with session.begin_nested():
                session.add(consultation)
        except (SlotConflict, IntegrityError):
            result.skipped.append(when)
            continue
        result.created.append(consultation)

    logger.info(
        "Recurring series for professional %s: %s created, %s skipped",
        professional_id, len(result.created), len(result.skipped),
    )
    return result


async def get_consultation(session: AsyncSession, actor: CurrentUser, consultation_id: int) -> Consultation:
    consultation = await _get(session, consultation_id)
    if actor.is_admin:
        return consultation
    if actor.current_role == "professional" and consultation.professional_id == actor.id:
        return consultation
    if actor.current_role == "client":
        owned = consultation.client_id == actor.id
        if not owned and consultation.dependent_id:
            dep = (await session.execute(
                select(Dependent.id).where(Dependent.id == consultation.dependent_id, Dependent.client_id == actor.id)
            )).first()
            owned = dep is not None
        if owned and consultation.status != "cancelled":
            return consultation
    # Other tenants' consultations are reported as missing
    raise NotFound("Consulta não encontrada")


async def cancel_consultation(session: AsyncSession, actor: CurrentUser, consultation_id: int,
                              reason: Optional[str] = None) -> Consultation:
    consultation = await _get(session, consultation_id)
    _check_professional(actor, consultation)
    if consultation.status == "cancelled":
        raise ValidationFailed("Consulta já está cancelada")

    consultation.status = "cancelled"
    consultation.cancelled_at = utc_now()
    consultation.cancelled_by = actor.id
    consultation.cancellation_reason = reason
    await session.execute(
        update(Appointment)
        .where(Appointment.consultation_id == consultation.id)
        .values(status="cancelled")
    )
    await session.flush()
    logger.info("Consultation %s cancelled by %s", consultation.id, actor.id)
    return consultation


async def update_status(session: AsyncSession, actor: CurrentUser, consultation_id: int, status: str,
                        reason: Optional[str] = None) -> Consultation:
    if status not in TRANSITIONS:
        raise ValidationFailed("Status inválido")
    if status == "cancelled":
        return await cancel_consultation(session, actor, consultation_id, reason)

    consultation = await _get(session, consultation_id)
    _check_professional(actor, consultation)
    if status not in TRANSITIONS[consultation.status]:
        raise ValidationFailed(f"Transição de '{consultation.status}' para '{status}' não permitida")

    consultation.status = status
    await session.execute(
        update(Appointment)
        .where(Appointment.consultation_id == consultation.id, Appointment.status != "cancelled")
        .values(status=status)
    )
    await session.flush()
    return consultation


async def reschedule(session: AsyncSession, actor: CurrentUser, consultation_id: int, when: datetime) -> Consultation:
    consultation = await _get(session, consultation_id)
    _check_professional(actor, consultation)
    if consultation.status not in RESCHEDULABLE:
        raise ValidationFailed("Apenas consultas agendadas ou confirmadas podem ser reagendadas")

    when = to_naive_utc(when)
    await _ensure_no_overlap(session, consultation.professional_id, when, exclude_id=consultation.id)

    linked = (await session.execute(
        select(Appointment).where(
            Appointment.consultation_id == consultation.id,
            Appointment.status != "cancelled",
        )
    )).scalars().all()
    for appointment in linked:
        await appointments.ensure_slot_free(
            session, consultation.professional_id, when.date(), when.time(), exclude_id=appointment.id
        )
        appointment.date = when.date()
        appointment.time = when.time()

    consultation.date = when
    try:
        await session.flush()
    except IntegrityError:
        raise SlotConflict()
    return consultation


async def update_consultation(session: AsyncSession, actor: CurrentUser, consultation_id: int, changes: dict) -> Consultation:
    """Edit the free-form fields; patient and professional never change."""
    consultation = await _get(session, consultation_id)
    _check_professional(actor, consultation)
    if "location_id" in changes:
        if changes["location_id"] is not None:
            await get_location(session, consultation.professional_id, changes["location_id"])
        consultation.location_id = changes["location_id"]
    if "notes" in changes:
        consultation.notes = changes["notes"]
    await session.flush()
    return consultation


async def delete_consultation(session: AsyncSession, consultation_id: int):
    consultation = await _get(session, consultation_id)
    await session.execute(delete(Appointment).where(Appointment.consultation_id == consultation.id))
    await session.delete(consultation)
    await session.flush()
    logger.info("Consultation %s deleted", consultation_id)


def _listing_query():
    client = aliased(User)
    professional = aliased(User)
    dependent_owner = aliased(User)
    return select(
        Consultation,
        client.name, Dependent.name, PrivatePatient.name,
        professional.name, Service.name, AttendanceLocation.name,
    ).outerjoin(client, Consultation.client_id == client.id) \
     .outerjoin(Dependent, Consultation.dependent_id == Dependent.id) \
     .outerjoin(dependent_owner, Dependent.client_id == dependent_owner.id) \
     .outerjoin(PrivatePatient, Consultation.private_patient_id == PrivatePatient.id) \
     .join(professional, Consultation.professional_id == professional.id) \
     .join(Service, Consultation.service_id == Service.id) \
     .outerjoin(AttendanceLocation, Consultation.location_id == AttendanceLocation.id)


async def list_consultations(session: AsyncSession, actor: CurrentUser, start: Optional[date_type] = None,
                             end: Optional[date_type] = None, status: Optional[str] = None):
    q = _listing_query()
    if actor.is_admin:
        pass
    elif actor.current_role == "professional":
        q = q.where(Consultation.professional_id == actor.id)
    elif actor.current_role == "client":
        own_dependents = select(Dependent.id).where(Dependent.client_id == actor.id)
        q = q.where(
            or_(Consultation.client_id == actor.id, Consultation.dependent_id.in_(own_dependents)),
            Consultation.status != "cancelled",
        )
    else:
        raise Forbidden()
    if start:
        q = q.where(Consultation.date >= datetime.combine(start, time_type.min))
    if end:
        q = q.where(Consultation.date < datetime.combine(end + timedelta(days=1), time_type.min))
    if status:
        q = q.where(Consultation.status == status)
    res = await session.execute(q.order_by(Consultation.date.desc(), Consultation.id.desc()))
    return [serialize_consultation_row(row) for row in res.all()]


async def get_consultation_detail(session: AsyncSession, actor: CurrentUser, consultation_id: int) -> dict:
    consultation = await get_consultation(session, actor, consultation_id)
    row = (await session.execute(_listing_query().where(Consultation.id == consultation.id))).first()
    return serialize_consultation_row(row)


def patient_kind(consultation: Consultation) -> str:
    if consultation.client_id:
        return "client"
    if consultation.dependent_id:
        return "dependent"
    return "private"


def serialize_consultation(c: Consultation) -> dict:
    return {
        "id": c.id,
        "client_id": c.client_id,
        "dependent_id": c.dependent_id,
        "private_patient_id": c.private_patient_id,
        "patient_type": patient_kind(c),
        "professional_id": c.professional_id,
        "service_id": c.service_id,
        "location_id": c.location_id,
        "value": float(c.value),
        "date": c.date.isoformat(),
        "status": c.status,
        "notes": c.notes,
        "cancelled_at": c.cancelled_at.isoformat() if c.cancelled_at else None,
        "cancelled_by": c.cancelled_by,
        "cancellation_reason": c.cancellation_reason,
    }


def serialize_consultation_row(row) -> dict:
    c, client_name, dependent_name, private_name, professional_name, service_name, location_name = row
    data = serialize_consultation(c)
    data.update({
        "patient_name": client_name or dependent_name or private_name,
        "professional_name": professional_name,
        "service_name": service_name,
        "location_name": location_name,
    })
    return data


async def whatsapp_link(session: AsyncSession, actor: CurrentUser, consultation_id: int) -> str:
    consultation = await _get(session, consultation_id)
    _check_professional(actor, consultation)
    if consultation.client_id:
        ref = ClientRef(consultation.client_id)
    elif consultation.dependent_id:
        ref = DependentRef(consultation.dependent_id)
    else:
        ref = PrivatePatientRef(consultation.private_patient_id)
    patient = await resolve_patient(session, consultation.professional_id, ref)
    digits = "".join(ch for ch in (patient.phone or "") if ch.isdigit())
    if not digits:
        raise ValidationFailed("Paciente não possui telefone cadastrado")
    if digits.startswith("55") and len(digits) > 11:
        digits = digits[2:]

    service = await get_service(session, consultation.service_id)
    message = (
        f"Olá {patient.name}! Sua consulta de {service.name} está marcada para "
        f"{consultation.date.strftime('%d/%m/%Y')} às {consultation.date.strftime('%H:%M')}. "
        "Por favor, confirme sua presença."
    )
    return f"https://wa.me/55{digits}?text={quote(message)}"
