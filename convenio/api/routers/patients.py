from typing import Optional
from fastapi import APIRouter, Depends
from convenio.api.schemas import DependentCreate, DependentUpdate, PrivatePatientCreate, PrivatePatientUpdate
from convenio.core.database import AsyncSessionLocal
from convenio.core.errors import ValidationFailed
from convenio.core.security import CurrentUser, get_current_user, require_roles
from convenio.services import identity, patients

router = APIRouter(prefix="/api", tags=["Patients"])

professional_only = require_roles("professional")


# Dependents

@router.get("/dependents")
async def list_dependents(client_id: Optional[int] = None,
                          user: CurrentUser = Depends(require_roles("client", "admin"))):
    owner_id = client_id if (user.is_admin and client_id) else user.id
    async with AsyncSessionLocal() as session:
        dependents = await patients.list_dependents(session, user, owner_id)
        return [patients.serialize_dependent(d) for d in dependents]


@router.get("/dependents/lookup")
async def lookup_dependent(cpf: str, user: CurrentUser = Depends(require_roles("professional", "admin"))):
    async with AsyncSessionLocal() as session:
        dependent, client = await patients.lookup_dependent(session, cpf)
        data = patients.serialize_dependent(dependent, client_name=client.name)
        data["client_subscription_status"] = client.subscription_status
        data["subscription_active"] = identity.subscription_is_active(
            dependent.subscription_status, dependent.subscription_expiry
        )
        return data


@router.get("/dependents/{dependent_id}")
async def get_dependent(dependent_id: int, user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        return patients.serialize_dependent(await patients.get_dependent(session, user, dependent_id))


@router.post("/dependents", status_code=201)
async def create_dependent(body: DependentCreate, user: CurrentUser = Depends(require_roles("client", "admin"))):
    if user.is_admin and not body.client_id:
        raise ValidationFailed("Informe o cliente titular")
    client_id = body.client_id if user.is_admin else user.id
    async with AsyncSessionLocal() as session:
        dependent = await patients.create_dependent(
            session, user, client_id, body.name, body.national_id, body.birth_date
        )
        await session.commit()
        return patients.serialize_dependent(dependent)


@router.put("/dependents/{dependent_id}")
async def update_dependent(dependent_id: int, body: DependentUpdate,
                           user: CurrentUser = Depends(require_roles("client", "admin"))):
    async with AsyncSessionLocal() as session:
        dependent = await patients.update_dependent(session, user, dependent_id, body.name, body.birth_date)
        await session.commit()
        return patients.serialize_dependent(dependent)


@router.delete("/dependents/{dependent_id}")
async def delete_dependent(dependent_id: int, user: CurrentUser = Depends(require_roles("client", "admin"))):
    async with AsyncSessionLocal() as session:
        await patients.delete_dependent(session, user, dependent_id)
        await session.commit()
        return {"message": "Dependente excluído com sucesso"}


@router.get("/clients/lookup")
async def lookup_client(cpf: str, user: CurrentUser = Depends(require_roles("professional", "admin"))):
    async with AsyncSessionLocal() as session:
        client = await identity.lookup_client(session, cpf)
        return {
            "id": client.id,
            "name": client.name,
            "national_id": client.national_id,
            "phone": client.phone,
            "subscription_status": client.subscription_status,
            "subscription_expiry": client.subscription_expiry.isoformat() if client.subscription_expiry else None,
            "subscription_active": identity.subscription_is_active(
                client.subscription_status, client.subscription_expiry
            ),
        }


# Private patients

@router.get("/private-patients")
async def list_private_patients(user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        return [patients.serialize_private_patient(p) for p in await patients.list_private_patients(session, user.id)]


@router.get("/private-patients/{patient_id}")
async def get_private_patient(patient_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        return patients.serialize_private_patient(await patients.get_private_patient(session, user.id, patient_id))


@router.post("/private-patients", status_code=201)
async def create_private_patient(body: PrivatePatientCreate, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        patient = await patients.create_private_patient(session, user.id, body.model_dump())
        await session.commit()
        return patients.serialize_private_patient(patient)


@router.put("/private-patients/{patient_id}")
async def update_private_patient(patient_id: int, body: PrivatePatientUpdate,
                                 user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        patient = await patients.update_private_patient(
            session, user.id, patient_id, body.model_dump(exclude_unset=True)
        )
        await session.commit()
        return patients.serialize_private_patient(patient)


@router.delete("/private-patients/{patient_id}")
async def delete_private_patient(patient_id: int, user: CurrentUser = Depends(professional_only)):
    async with AsyncSessionLocal() as session:
        await patients.delete_private_patient(session, user.id, patient_id)
        await session.commit()
        return {"message": "Paciente excluído com sucesso"}
