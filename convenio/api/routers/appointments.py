from datetime import date
from fastapi import APIRouter, Depends
from typing import Optional
from convenio.api.schemas import AppointmentCreate, AppointmentUpdate, LocationCreate, LocationUpdate
from convenio.core.database import AsyncSessionLocal
from convenio.core.security import CurrentUser, acting_professional, require_roles
from convenio.services import access, appointments, locations
from convenio.services.patient_refs import patient_ref

router = APIRouter(prefix="/api", tags=["Appointments"])

professional_only = require_roles("professional")


@router.get("/appointments")
async def list_appointments(start: Optional[date] = None, end: Optional[date] = None,
                            include_cancelled: bool = False, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        rows = await appointments.list_appointments(session, user.id, start, end, include_cancelled)
        return [appointments.serialize_appointment(a) for a in rows]


@router.post("/appointments", status_code=201)
async def create_appointment(body: AppointmentCreate, user: CurrentUser = Depends(require_roles("professional", "admin"))):
    professional_id = acting_professional(user, body.professional_id)
    ref = patient_ref(body.client_id, body.dependent_id, body.private_patient_id)
    async with AsyncSessionLocal() as session:
        appointment = await appointments.create_appointment(
            session, professional_id, ref, body.date, body.time,
            service_id=body.service_id,
            location_id=body.location_id,
            notes=body.notes,
        )
        await session.commit()
        return appointments.serialize_appointment(appointment)


@router.put("/appointments/{appointment_id}")
async def update_appointment(appointment_id: int, body: AppointmentUpdate,
                             user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        appointment = await appointments.update_appointment(
            session, user.id, appointment_id, body.model_dump(exclude_unset=True)
        )
        await session.commit()
        return appointments.serialize_appointment(appointment)


@router.put("/appointments/{appointment_id}/cancel")
async def cancel_appointment(appointment_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        appointment = await appointments.cancel_appointment(session, user.id, appointment_id)
        await session.commit()
        return appointments.serialize_appointment(appointment)


@router.delete("/appointments/{appointment_id}")
async def delete_appointment(appointment_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        await appointments.delete_appointment(session, user.id, appointment_id)
        await session.commit()
        return {"message": "Agendamento excluído com sucesso"}


@router.get("/scheduling-access/status")
async def scheduling_access_status(user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        return access.serialize_grant(await access.get_active_grant(session, user.id))


# Attendance locations

@router.get("/attendance-locations")
async def list_locations(user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        return [locations.serialize_location(loc) for loc in await locations.list_locations(session, user.id)]


@router.post("/attendance-locations", status_code=201)
async def create_location(body: LocationCreate, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        location = await locations.create_location(session, user.id, body.model_dump())
        await session.commit()
        return locations.serialize_location(location)


@router.put("/attendance-locations/{location_id}")
async def update_location(location_id: int, body: LocationUpdate, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        location = await locations.update_location(session, user.id, location_id, body.model_dump(exclude_unset=True))
        await session.commit()
        return locations.serialize_location(location)


@router.put("/attendance-locations/{location_id}/set-default")
async def set_default_location(location_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        location = await locations.set_default_location(session, user.id, location_id)
        await session.commit()
        return locations.serialize_location(location)


@router.delete("/attendance-locations/{location_id}")
async def delete_location(location_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        await locations.delete_location(session, user.id, location_id)
        await session.commit()
        return {"message": "Local excluído com sucesso"}
