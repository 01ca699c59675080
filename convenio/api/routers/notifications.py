from fastapi import APIRouter, Depends
from convenio.core.database import AsyncSessionLocal
from convenio.core.security import CurrentUser, get_current_user
from convenio.services import notifications

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])


@router.get("")
async def list_notifications(user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        return [notifications.serialize_notification(n) for n in await notifications.list_notifications(session, user.id)]


@router.put("/read-all")
async def mark_all_read(user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        await notifications.mark_all_read(session, user.id)
        await session.commit()
        return {"message": "Notificações marcadas como lidas"}


@router.put("/{notification_id}/read")
async def mark_read(notification_id: int, user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        await notifications.mark_read(session, notification_id=notification_id, user_id=user.id)
        await session.commit()
        return {"message": "Notificação marcada como lida"}
