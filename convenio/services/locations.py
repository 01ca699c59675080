from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.errors import InUse, NotFound, ValidationFailed
from convenio.models.models import Appointment, AttendanceLocation, Consultation

LOCATION_FIELDS = (
    "name", "address", "address_number", "address_complement", "neighborhood",
    "city", "state", "zip_code", "phone",
)


async def get_location(session: AsyncSession, professional_id: int, location_id: int) -> AttendanceLocation:
    location = (await session.execute(
        select(AttendanceLocation).where(
            AttendanceLocation.id == location_id,
            AttendanceLocation.professional_id == professional_id,
        )
    )).scalar()
    if not location:
        raise NotFound("Local de atendimento não encontrado")
    return location


async def list_locations(session: AsyncSession, professional_id: int):
    res = await session.execute(
        select(AttendanceLocation)
        .where(AttendanceLocation.professional_id == professional_id)
        .order_by(AttendanceLocation.is_default.desc(), AttendanceLocation.name)
    )
    return res.scalars().all()


async def _clear_default(session: AsyncSession, professional_id: int, keep_id=None):
    q = update(AttendanceLocation).where(
        AttendanceLocation.professional_id == professional_id,
        AttendanceLocation.is_default.is_(True),
    )
    if keep_id:
        q = q.where(AttendanceLocation.id != keep_id)
    await session.execute(q.values(is_default=False))


async def create_location(session: AsyncSession, professional_id: int, data: dict) -> AttendanceLocation:
    if not (data.get("name") or "").strip():
        raise ValidationFailed("Nome do local é obrigatório")
    if data.get("is_default"):
        await _clear_default(session, professional_id)
    location = AttendanceLocation(
        professional_id=professional_id,
        is_default=bool(data.get("is_default")),
        **{k: data.get(k) for k in LOCATION_FIELDS},
    )
    session.add(location)
    await session.flush()
    return location


async def update_location(session: AsyncSession, professional_id: int, location_id: int, changes: dict) -> AttendanceLocation:
    location = await get_location(session, professional_id, location_id)
    if "name" in changes and not (changes.get("name") or "").strip():
        raise ValidationFailed("Nome do local é obrigatório")
    for field in LOCATION_FIELDS:
        if field in changes:
            setattr(location, field, changes[field])
    if changes.get("is_default"):
        await _clear_default(session, professional_id, keep_id=location.id)
        location.is_default = True
    elif "is_default" in changes:
        location.is_default = False
    await session.flush()
    return location


async def set_default_location(session: AsyncSession, professional_id: int, location_id: int) -> AttendanceLocation:
    location = await get_location(session, professional_id, location_id)
    await _clear_default(session, professional_id, keep_id=location.id)
    location.is_default = True
    await session.flush()
    return location


async def delete_location(session: AsyncSession, professional_id: int, location_id: int):
    location = await get_location(session, professional_id, location_id)
    for model in (Consultation, Appointment):
        used = (await session.execute(select(model.id).where(model.location_id == location.id).limit(1))).first()
        if used:
            raise InUse("Local possui consultas ou agendamentos vinculados")
    await session.delete(location)
    await session.flush()


def serialize_location(location: AttendanceLocation) -> dict:
    data = {k: getattr(location, k) for k in LOCATION_FIELDS}
    data.update({
        "id": location.id,
        "professional_id": location.professional_id,
        "is_default": bool(location.is_default),
    })
    return data
