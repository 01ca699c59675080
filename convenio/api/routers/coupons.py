from typing import Optional
from fastapi import APIRouter, Depends
from convenio.api.schemas import CouponCreate, CouponUpdate
from convenio.core.database import AsyncSessionLocal
from convenio.core.errors import CouponInvalid
from convenio.core.security import CurrentUser, require_roles
from convenio.services import coupons

router = APIRouter(prefix="/api", tags=["Coupons"])

admin_only = require_roles("admin")


@router.get("/admin/coupons")
async def list_coupons(admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        return await coupons.list_coupons(session)


@router.post("/admin/coupons", status_code=201)
async def create_coupon(body: CouponCreate, admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        coupon = await coupons.create_coupon(session, admin.id, body.model_dump())
        await session.commit()
        return coupons.serialize_coupon(coupon)


@router.put("/admin/coupons/{coupon_id}")
async def update_coupon(coupon_id: int, body: CouponUpdate, admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        coupon = await coupons.update_coupon(session, coupon_id, body.model_dump(exclude_unset=True))
        await session.commit()
        return coupons.serialize_coupon(coupon)


@router.put("/admin/coupons/{coupon_id}/toggle")
async def toggle_coupon(coupon_id: int, admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        coupon = await coupons.toggle_coupon(session, coupon_id)
        await session.commit()
        return coupons.serialize_coupon(coupon)


@router.delete("/admin/coupons/{coupon_id}")
async def delete_coupon(coupon_id: int, admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        await coupons.delete_coupon(session, coupon_id)
        await session.commit()
        return {"message": "Cupom excluído com sucesso"}


@router.get("/validate-coupon/{code}")
async def validate_coupon(code: str, type: Optional[str] = None, user: CurrentUser = Depends(require_roles("client"))):
    async with AsyncSessionLocal() as session:
        try:
            coupon = await coupons.validate_coupon(session, code, user.id, type)
        except CouponInvalid as e:
            return {"valid": False, "message": e.message}
        return {"valid": True, "coupon": coupons.serialize_coupon(coupon)}
