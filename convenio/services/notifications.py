from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.errors import NotFound
from convenio.models.models import Notification


def notify(session: AsyncSession, user_id: int, title: str, message: str, type: str = "info") -> Notification:
    notification = Notification(user_id=user_id, title=title, message=message, type=type)
    session.add(notification)
    return notification


async def list_notifications(session: AsyncSession, user_id: int, limit: int = 50):
    res = await session.execute(
        select(Notification)
        .where(Notification.user_id == user_id)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
    )
    return res.scalars().all()


async def mark_read(session: AsyncSession, user_id: int, notification_id: int):
    notification = (await session.execute(
        select(Notification).where(Notification.id == notification_id, Notification.user_id == user_id)
    )).scalar()
    if not notification:
        raise NotFound("Notificação não encontrada")
    notification.is_read = True
    await session.flush()


async def mark_all_read(session: AsyncSession, user_id: int):
    await session.execute(
        update(Notification).where(Notification.user_id == user_id, Notification.is_read.is_(False)).values(is_read=True)
    )


def serialize_notification(n: Notification) -> dict:
    return {
        "id": n.id,
        "title": n.title,
        "message": n.message,
        "type": n.type,
        "is_read": bool(n.is_read),
        "created_at": n.created_at.isoformat() if n.created_at else None,
    }
