"""Tagged reference to the one patient an encounter belongs to."""
from dataclasses import dataclass
from typing import Optional, Union
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.errors import NotFound, PatientRefInvalid, SubscriptionInactive
from convenio.models.models import Dependent, PrivatePatient, User
from convenio.services.identity import subscription_is_active


@dataclass(frozen=True)
class ClientRef:
    id: int
    column = "client_id"


@dataclass(frozen=True)
class DependentRef:
    id: int
    column = "dependent_id"


@dataclass(frozen=True)
class PrivatePatientRef:
    id: int
    column = "private_patient_id"


PatientRef = Union[ClientRef, DependentRef, PrivatePatientRef]


def patient_ref(client_id=None, dependent_id=None, private_patient_id=None) -> PatientRef:
    given = [
        ref for ref in (
            ClientRef(client_id) if client_id else None,
            DependentRef(dependent_id) if dependent_id else None,
            PrivatePatientRef(private_patient_id) if private_patient_id else None,
        ) if ref
    ]
    if len(given) != 1:
        raise PatientRefInvalid()
    return given[0]


def ref_columns(ref: PatientRef) -> dict:
    columns = {"client_id": None, "dependent_id": None, "private_patient_id": None}
    columns[ref.column] = ref.id
    return columns


def is_convenio(ref: PatientRef) -> bool:
    return not isinstance(ref, PrivatePatientRef)


@dataclass
class ResolvedPatient:
    name: str
    phone: Optional[str]


async def resolve_patient(session: AsyncSession, professional_id: int, ref: PatientRef,
                          require_subscription: bool = False) -> ResolvedPatient:
    """Loads the referenced patient.

    Private patients must belong to ``professional_id``. With
    ``require_subscription`` clients and dependents must hold an active
    subscription.
    """
    if isinstance(ref, ClientRef):
        client = (await session.execute(select(User).where(User.id == ref.id))).scalar()
        if not client or not client.has_role("client"):
            raise NotFound("Cliente não encontrado")
        if require_subscription and not subscription_is_active(client.subscription_status, client.subscription_expiry):
            raise SubscriptionInactive("Cliente não possui assinatura ativa")
        return ResolvedPatient(client.name, client.phone)

    if isinstance(ref, DependentRef):
        row = (await session.execute(
            select(Dependent, User.phone)
            .join(User, Dependent.client_id == User.id)
            .where(Dependent.id == ref.id)
        )).first()
        if not row:
            raise NotFound("Dependente não encontrado")
        dependent, phone = row
        if require_subscription and not subscription_is_active(dependent.subscription_status, dependent.subscription_expiry):
            raise SubscriptionInactive("Dependente não possui assinatura ativa")
        return ResolvedPatient(dependent.name, phone)

    patient = (await session.execute(
        select(PrivatePatient).where(
            PrivatePatient.id == ref.id,
            PrivatePatient.professional_id == professional_id,
        )
    )).scalar()
    if not patient:
        raise NotFound("Paciente não encontrado")
    return ResolvedPatient(patient.name, patient.phone)
