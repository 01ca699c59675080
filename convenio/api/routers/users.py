from typing import Optional
from fastapi import APIRouter, Depends, File, UploadFile
from convenio.api.schemas import ActivateRequest, PasswordChange, RolesUpdate, UserCreate, UserUpdate
from convenio.core.database import AsyncSessionLocal, to_naive_utc
from convenio.core.errors import Forbidden, ValidationFailed
from convenio.core.security import CurrentUser, ensure_owner_or_admin, get_current_user, require_roles
from convenio.services import identity
from convenio.services.storage import get_image_host

router = APIRouter(prefix="/api/users", tags=["Users"])

MAX_PHOTO_BYTES = 5 * 1024 * 1024


@router.get("")
async def list_users(role: Optional[str] = None, user: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        users = await identity.list_users(session, role)
        return [identity.serialize_user(u) for u in users]


@router.get("/professionals")
async def list_professionals(user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        professionals = await identity.list_users(session, "professional")
        return [
            {
                "id": p.id,
                "name": p.name,
                "email": p.email,
                "phone": p.phone,
                "city": p.city,
                "state": p.state,
                "category_id": p.category_id,
                "crm": p.crm,
                "photo_url": p.photo_url,
            }
            for p in professionals
        ]


@router.post("", status_code=201)
async def create_user(body: UserCreate, admin: CurrentUser = Depends(require_roles("admin"))):
    profile = body.model_dump(exclude={"roles", "password"})
    async with AsyncSessionLocal() as session:
        user, temporary_password = await identity.admin_create_user(session, profile, body.roles, body.password)
        await session.commit()
        data = identity.serialize_user(user)
        data["temporary_password"] = temporary_password
        return data


@router.get("/{user_id}")
async def get_user(user_id: int, user: CurrentUser = Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    async with AsyncSessionLocal() as session:
        return identity.serialize_user(await identity.get_user(session, user_id))


@router.put("/{user_id}")
async def update_user(user_id: int, body: UserUpdate, user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        updated = await identity.update_profile(session, user, user_id, body.model_dump(exclude_unset=True))
        await session.commit()
        return identity.serialize_user(updated)


@router.delete("/{user_id}")
async def delete_user(user_id: int, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        await identity.delete_user(session, admin, user_id)
        await session.commit()
        return {"message": "Usuário excluído com sucesso"}


@router.put("/{user_id}/roles")
async def set_roles(user_id: int, body: RolesUpdate, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        updated = await identity.assign_roles(session, admin, user_id, body.roles)
        await session.commit()
        return identity.serialize_user(updated)


@router.put("/{user_id}/password")
async def change_password(user_id: int, body: PasswordChange, user: CurrentUser = Depends(get_current_user)):
    if user.id != user_id:
        raise Forbidden("Só é possível alterar a própria senha")
    async with AsyncSessionLocal() as session:
        await identity.change_credential(session, user_id, body.current_password, body.new_password)
        await session.commit()
        return {"message": "Senha alterada com sucesso"}


@router.put("/{user_id}/activate")
async def activate_client(user_id: int, body: ActivateRequest, admin: CurrentUser = Depends(require_roles("admin"))):
    expiry = to_naive_utc(body.expiry) if body.expiry else None
    async with AsyncSessionLocal() as session:
        user = await identity.activate_client(session, user_id, expiry)
        await session.commit()
        return identity.serialize_user(user)


@router.get("/{user_id}/subscription-status")
async def subscription_status(user_id: int, user: CurrentUser = Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    async with AsyncSessionLocal() as session:
        record = await identity.get_user(session, user_id)
        return {
            "subscription_status": record.subscription_status,
            "subscription_expiry": record.subscription_expiry.isoformat() if record.subscription_expiry else None,
            "is_active": identity.subscription_is_active(record.subscription_status, record.subscription_expiry),
        }


async def _read_image(upload: UploadFile) -> bytes:
    data = await upload.read()
    if not data:
        raise ValidationFailed("Arquivo vazio")
    if len(data) > MAX_PHOTO_BYTES:
        raise ValidationFailed("Imagem deve ter no máximo 5MB")
    return data


@router.post("/{user_id}/photo")
async def upload_photo(user_id: int, photo: UploadFile = File(...),
                       user: CurrentUser = Depends(get_current_user), host=Depends(get_image_host)):
    ensure_owner_or_admin(user, user_id)
    data = await _read_image(photo)
    uploaded = await host.upload(data, photo.content_type or "image/jpeg", folder="professionals")
    async with AsyncSessionLocal() as session:
        record = await identity.get_user(session, user_id)
        record.photo_url = uploaded["url"]
        await session.commit()
        return {"photo_url": record.photo_url}


@router.post("/{user_id}/signature")
async def upload_signature(user_id: int, signature: UploadFile = File(...),
                           user: CurrentUser = Depends(get_current_user), host=Depends(get_image_host)):
    """Signature image drawn on the professional's generated documents."""
    ensure_owner_or_admin(user, user_id)
    data = await _read_image(signature)
    async with AsyncSessionLocal() as session:
        record = await identity.get_user(session, user_id)
        if not record.has_role("professional"):
            raise ValidationFailed("Apenas profissionais podem cadastrar assinatura")
        uploaded = await host.upload(data, signature.content_type or "image/png", folder="signatures")
        record.signature_url = uploaded["url"]
        await session.commit()
        return {"signature_url": record.signature_url}


@router.delete("/{user_id}/signature")
async def remove_signature(user_id: int, user: CurrentUser = Depends(get_current_user)):
    ensure_owner_or_admin(user, user_id)
    async with AsyncSessionLocal() as session:
        record = await identity.get_user(session, user_id)
        record.signature_url = None
        await session.commit()
        return {"signature_url": None}
