"""Users, role sets, credentials and client subscription state."""
import logging
import re
import secrets
from datetime import datetime
from typing import Iterable, Optional
from sqlalchemy import String, cast, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core import config
from convenio.core.database import utc_now
from convenio.core.errors import (
    DuplicateIdentifier, Forbidden, InvalidCredential, NotFound,
    UnauthorizedRoleAssignment, ValidationFailed,
)
from convenio.core.security import CurrentUser, get_password_hash, verify_password
from convenio.models.models import (
    ROLES, AffiliateCommission, AffiliateReferral, AgendaPayment, Appointment, AttendanceLocation,
    ClientPayment, Consultation, Coupon, CouponUsage, Dependent, DependentPayment, MedicalDocument,
    MedicalRecord, Notification, PrivatePatient, ProfessionalPayment,
    SchedulingAccess, User,
)

logger = logging.getLogger(__name__)

PROFILE_FIELDS = (
    "name", "email", "phone", "birth_date", "address", "address_number",
    "address_complement", "neighborhood", "city", "state", "zip_code",
)
PROFESSIONAL_FIELDS = ("category_id", "percentage", "crm")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MIN_PASSWORD_LENGTH = 6


def normalize_national_id(raw) -> str:
    digits = re.sub(r"\D", "", str(raw or ""))
    if len(digits) != 11:
        raise ValidationFailed("CPF deve conter 11 dígitos numéricos")
    return digits


def normalize_roles(roles: Iterable[str]) -> list:
    role_set = sorted(set(roles or []))
    if not role_set:
        raise ValidationFailed("Pelo menos uma role deve ser informada")
    invalid = [r for r in role_set if r not in ROLES]
    if invalid:
        raise ValidationFailed(f"Roles inválidas: {', '.join(invalid)}")
    return role_set


def role_filter(role: str):
    """WHERE clause matching users whose JSON role array contains ``role``."""
    return cast(User.roles, String).like(f'%"{role}"%')


def add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29/02 -> 28/02
        return moment.replace(year=moment.year + years, day=28)


def subscription_is_active(status: Optional[str], expiry: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """Active status and, when an expiry is set, strictly before it.

    At exactly ``expiry`` the subscription is no longer active.
    """
    if status != "active":
        return False
    if expiry is None:
        return True
    return (now or utc_now()) < expiry


def _check_password(password: Optional[str]):
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Senha deve ter pelo menos {MIN_PASSWORD_LENGTH} caracteres")


def _check_profile(profile: dict):
    if "name" in profile and not (profile.get("name") or "").strip():
        raise ValidationFailed("Nome é obrigatório")
    email = profile.get("email")
    if email and not EMAIL_RE.match(email):
        raise ValidationFailed("Email inválido")
    percentage = profile.get("percentage")
    if percentage is not None and not 0 <= int(percentage) <= 100:
        raise ValidationFailed("Porcentagem deve estar entre 0 e 100")


async def ensure_national_id_free(session: AsyncSession, national_id: str, exclude_user_id=None, exclude_dependent_id=None):
    """CPFs are unique across users and dependents together."""
    q = select(User.id).where(User.national_id == national_id)
    if exclude_user_id:
        q = q.where(User.id != exclude_user_id)
    if (await session.execute(q)).first():
        raise DuplicateIdentifier()
    q = select(Dependent.id).where(Dependent.national_id == national_id)
    if exclude_dependent_id:
        q = q.where(Dependent.id != exclude_dependent_id)
    if (await session.execute(q)).first():
        raise DuplicateIdentifier()


async def _insert_user(session: AsyncSession, user: User) -> User:
    session.add(user)
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateIdentifier()
    return user


async def get_user(session: AsyncSession, user_id: int) -> User:
    user = (await session.execute(select(User).where(User.id == user_id))).scalar()
    if not user:
        raise NotFound("Usuário não encontrado")
    return user


async def register_client(session: AsyncSession, profile: dict, password: str) -> User:
    """Self-service registration; the role set is always ``{client}``."""
    national_id = normalize_national_id(profile.get("national_id"))
    _check_profile({**profile, "name": profile.get("name")})
    _check_password(password)
    await ensure_national_id_free(session, national_id)

    user = User(
        **{k: profile.get(k) for k in PROFILE_FIELDS},
        national_id=national_id,
        password_hash=get_password_hash(password),
        roles=["client"],
        subscription_status="pending",
    )
    await _insert_user(session, user)
    logger.info("Client %s registered", user.id)
    return user


async def admin_create_user(session: AsyncSession, profile: dict, roles, password: Optional[str] = None):
    """Returns ``(user, temporary_password)``; the password is None when supplied by the admin."""
    national_id = normalize_national_id(profile.get("national_id"))
    role_set = normalize_roles(roles)
    _check_profile({**profile, "name": profile.get("name")})
    temporary_password = None
    if password:
        _check_password(password)
    else:
        temporary_password = secrets.token_urlsafe(8)[:10]
        password = temporary_password
    await ensure_national_id_free(session, national_id)

    user = User(
        **{k: profile.get(k) for k in PROFILE_FIELDS},
        **{k: profile.get(k) for k in PROFESSIONAL_FIELDS},
        national_id=national_id,
        password_hash=get_password_hash(password),
        roles=role_set,
        subscription_status="pending",
    )
    if "professional" in role_set and user.percentage is None:
        user.percentage = 50
    await _insert_user(session, user)
    logger.info("User %s created with roles %s", user.id, role_set)
    return user, temporary_password


async def authenticate(session: AsyncSession, national_id, password: str) -> User:
    try:
        cpf = normalize_national_id(national_id)
    except ValidationFailed:
        raise InvalidCredential()
    user = (await session.execute(select(User).where(User.national_id == cpf))).scalar()
    if not user or not password or not verify_password(password, user.password_hash):
        raise InvalidCredential()
    return user


async def update_profile(session: AsyncSession, actor: CurrentUser, user_id: int, changes: dict) -> User:
    if not actor.is_admin and actor.id != user_id:
        raise Forbidden()
    if "roles" in changes and changes["roles"] is not None:
        if not actor.is_admin:
            raise UnauthorizedRoleAssignment()
    user = await get_user(session, user_id)
    _check_profile(changes)

    for field in PROFILE_FIELDS:
        if field in changes:
            setattr(user, field, changes[field])
    if actor.is_admin:
        for field in PROFESSIONAL_FIELDS:
            if field in changes:
                setattr(user, field, changes[field])
        if changes.get("roles") is not None:
            user.roles = normalize_roles(changes["roles"])
    await session.flush()
    return user


async def change_credential(session: AsyncSession, user_id: int, current: str, new: str):
    user = await get_user(session, user_id)
    if not current or not verify_password(current, user.password_hash):
        raise InvalidCredential("Senha atual incorreta")
    _check_password(new)
    user.password_hash = get_password_hash(new)
    await session.flush()


async def assign_roles(session: AsyncSession, actor: CurrentUser, user_id: int, roles) -> User:
    if not actor.is_admin:
        raise UnauthorizedRoleAssignment()
    user = await get_user(session, user_id)
    user.roles = normalize_roles(roles)
    if "professional" in user.roles and user.percentage is None:
        user.percentage = 50
    await session.flush()
    logger.info("Admin %s set roles of user %s to %s", actor.id, user_id, user.roles)
    return user


async def activate_client(session: AsyncSession, user_id: int, expiry: Optional[datetime] = None) -> User:
    user = await get_user(session, user_id)
    if not user.has_role("client"):
        raise ValidationFailed("Usuário não é um cliente")
    now = utc_now()
    expiry = expiry or add_years(now, config.SUBSCRIPTION_YEARS)
    if expiry <= now:
        raise ValidationFailed("Data de expiração deve ser futura")
    user.subscription_status = "active"
    user.subscription_expiry = expiry
    await session.flush()
    logger.info("Client %s activated until %s", user_id, expiry.isoformat())
    return user


async def delete_user(session: AsyncSession, actor: CurrentUser, user_id: int):
    """Hard delete with cleanup of every row that references the user."""
    if not actor.is_admin:
        raise Forbidden()
    if actor.id == user_id:
        raise Forbidden("Você não pode excluir sua própria conta")
    await get_user(session, user_id)

    dependent_ids = select(Dependent.id).where(Dependent.client_id == user_id)
    patient_ids = select(PrivatePatient.id).where(PrivatePatient.professional_id == user_id)

    await session.execute(delete(Appointment).where(or_(
        Appointment.professional_id == user_id,
        Appointment.client_id == user_id,
        Appointment.dependent_id.in_(dependent_ids),
    )))
    await session.execute(delete(Consultation).where(or_(
        Consultation.professional_id == user_id,
        Consultation.client_id == user_id,
        Consultation.dependent_id.in_(dependent_ids),
    )))
    await session.execute(update(Consultation).where(Consultation.cancelled_by == user_id).values(cancelled_by=None))
    await session.execute(delete(DependentPayment).where(DependentPayment.dependent_id.in_(dependent_ids)))
    await session.execute(delete(Dependent).where(Dependent.client_id == user_id))
    await session.execute(delete(MedicalDocument).where(MedicalDocument.professional_id == user_id))
    await session.execute(delete(MedicalRecord).where(MedicalRecord.professional_id == user_id))
    await session.execute(delete(PrivatePatient).where(PrivatePatient.id.in_(patient_ids)))
    await session.execute(delete(AttendanceLocation).where(AttendanceLocation.professional_id == user_id))
    await session.execute(delete(SchedulingAccess).where(SchedulingAccess.professional_id == user_id))
    await session.execute(update(SchedulingAccess).where(SchedulingAccess.granted_by == user_id).values(granted_by=None))
    await session.execute(delete(ClientPayment).where(ClientPayment.user_id == user_id))
    await session.execute(delete(ProfessionalPayment).where(ProfessionalPayment.professional_id == user_id))
    await session.execute(delete(AgendaPayment).where(AgendaPayment.professional_id == user_id))
    await session.execute(delete(AffiliateCommission).where(or_(
        AffiliateCommission.affiliate_id == user_id, AffiliateCommission.client_id == user_id,
    )))
    await session.execute(delete(AffiliateReferral).where(AffiliateReferral.affiliate_id == user_id))
    await session.execute(update(AffiliateReferral).where(AffiliateReferral.user_id == user_id).values(user_id=None))
    await session.execute(delete(Notification).where(Notification.user_id == user_id))
    await session.execute(delete(CouponUsage).where(CouponUsage.user_id == user_id))
    await session.execute(update(Coupon).where(Coupon.created_by == user_id).values(created_by=None))
    await session.execute(delete(User).where(User.id == user_id))
    logger.info("Admin %s deleted user %s", actor.id, user_id)


async def list_users(session: AsyncSession, role: Optional[str] = None):
    q = select(User).order_by(User.name)
    if role:
        q = q.where(role_filter(role))
    return (await session.execute(q)).scalars().all()


async def lookup_client(session: AsyncSession, national_id) -> User:
    cpf = normalize_national_id(national_id)
    user = (await session.execute(
        select(User).where(User.national_id == cpf, role_filter("client"))
    )).scalar()
    if not user:
        raise NotFound("Cliente não encontrado")
    return user


def serialize_user(user: User) -> dict:
    return {
        "id": user.id,
        "name": user.name,
        "national_id": user.national_id,
        "email": user.email,
        "phone": user.phone,
        "birth_date": user.birth_date.isoformat() if user.birth_date else None,
        "address": user.address,
        "address_number": user.address_number,
        "address_complement": user.address_complement,
        "neighborhood": user.neighborhood,
        "city": user.city,
        "state": user.state,
        "zip_code": user.zip_code,
        "roles": list(user.roles or []),
        "subscription_status": user.subscription_status,
        "subscription_expiry": user.subscription_expiry.isoformat() if user.subscription_expiry else None,
        "category_id": user.category_id,
        "percentage": user.percentage,
        "crm": user.crm,
        "photo_url": user.photo_url,
        "signature_url": user.signature_url,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
