"""Time-boxed scheduling-access capability for professionals.

A professional holds the capability while one grant row is active and not
yet expired. Granting replaces any previous grant; revoking deactivates it.
Grants come from an admin or from a paid agenda purchase.
"""
import logging
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.database import utc_now
from convenio.core.errors import NotFound, SchedulingAccessExpired, ValidationFailed
from convenio.models.models import SchedulingAccess, User
from convenio.services.identity import role_filter
from convenio.services.notifications import notify

logger = logging.getLogger(__name__)


async def get_active_grant(session: AsyncSession, professional_id: int, now: Optional[datetime] = None) -> Optional[SchedulingAccess]:
    now = now or utc_now()
    res = await session.execute(
        select(SchedulingAccess)
        .where(
            SchedulingAccess.professional_id == professional_id,
            SchedulingAccess.is_active.is_(True),
            SchedulingAccess.expires_at > now,
        )
        .order_by(SchedulingAccess.created_at.desc(), SchedulingAccess.id.desc())
        .limit(1)
    )
    return res.scalar()


async def ensure_scheduling_access(session: AsyncSession, professional_id: int):
    if not await get_active_grant(session, professional_id):
        raise SchedulingAccessExpired()


async def _get_professional(session: AsyncSession, professional_id: int) -> User:
    professional = (await session.execute(select(User).where(User.id == professional_id))).scalar()
    if not professional or not professional.has_role("professional"):
        raise NotFound("Profissional não encontrado")
    return professional


async def _install_grant(session, professional_id, expires_at, granted_by=None, reason=None) -> SchedulingAccess:
    await session.execute(
        update(SchedulingAccess)
        .where(SchedulingAccess.professional_id == professional_id, SchedulingAccess.is_active.is_(True))
        .values(is_active=False)
    )
    grant = SchedulingAccess(
        professional_id=professional_id,
        granted_by=granted_by,
        starts_at=utc_now(),
        expires_at=expires_at,
        reason=reason,
        is_active=True,
    )
    session.add(grant)
    await session.flush()
    return grant


async def grant_scheduling_access(session: AsyncSession, professional_id: int, admin_id: int,
                                  expires_at: datetime, reason: Optional[str] = None) -> SchedulingAccess:
    await _get_professional(session, professional_id)
    if expires_at <= utc_now():
        raise ValidationFailed("Data de expiração deve ser futura")
    grant = await _install_grant(session, professional_id, expires_at, granted_by=admin_id, reason=reason)
    notify(
        session, professional_id, "Acesso à agenda liberado",
        f"Seu acesso à agenda foi liberado até {expires_at.strftime('%d/%m/%Y')}.",
        type="scheduling_access",
    )
    logger.info("Admin %s granted scheduling access to %s until %s", admin_id, professional_id, expires_at.isoformat())
    return grant


async def extend_scheduling_access(session: AsyncSession, professional_id: int, days: int) -> SchedulingAccess:
    """Paid agenda access: adds ``days`` on top of any grant still running."""
    current = await get_active_grant(session, professional_id)
    start = current.expires_at if current else utc_now()
    return await _install_grant(
        session, professional_id, start + timedelta(days=days), reason=f"Compra de acesso ({days} dias)"
    )


async def revoke_scheduling_access(session: AsyncSession, professional_id: int, admin_id: int):
    res = await session.execute(
        update(SchedulingAccess)
        .where(SchedulingAccess.professional_id == professional_id, SchedulingAccess.is_active.is_(True))
        .values(is_active=False)
    )
    if not res.rowcount:
        raise NotFound("Nenhum acesso ativo encontrado")
    notify(
        session, professional_id, "Acesso à agenda revogado",
        "Seu acesso à agenda foi revogado pelo administrador.",
        type="scheduling_access",
    )
    logger.info("Admin %s revoked scheduling access of %s", admin_id, professional_id)


async def list_professionals_access(session: AsyncSession):
    now = utc_now()
    professionals = (await session.execute(
        select(User).where(role_filter("professional")).order_by(User.name)
    )).scalars().all()
    result = []
    for p in professionals:
        grant = await get_active_grant(session, p.id, now)
        result.append({
            "professional_id": p.id,
            "name": p.name,
            **serialize_grant(grant),
        })
    return result


def serialize_grant(grant: Optional[SchedulingAccess]) -> dict:
    if not grant:
        return {"has_access": False, "expires_at": None, "reason": None, "granted_by": None}
    return {
        "has_access": True,
        "expires_at": grant.expires_at.isoformat(),
        "reason": grant.reason,
        "granted_by": grant.granted_by,
    }
