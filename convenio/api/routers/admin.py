from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, File, Form, UploadFile
from convenio.api.schemas import AffiliateUpdate, GrantAccessRequest, RevokeAccessRequest
from convenio.core.database import AsyncSessionLocal, to_naive_utc
from convenio.core.errors import ValidationFailed
from convenio.core.security import CurrentUser, require_roles
from convenio.services import access, affiliates, patients, subscriptions
from convenio.services.storage import get_image_host

router = APIRouter(prefix="/api/admin", tags=["Admin"], dependencies=[Depends(require_roles("admin"))])


@router.post("/grant-scheduling-access")
async def grant_scheduling_access(body: GrantAccessRequest, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        grant = await access.grant_scheduling_access(
            session, body.professional_id, admin.id, to_naive_utc(body.expires_at), body.reason
        )
        await session.commit()
        return {"professional_id": body.professional_id, **access.serialize_grant(grant)}


@router.post("/revoke-scheduling-access")
async def revoke_scheduling_access(body: RevokeAccessRequest, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        await access.revoke_scheduling_access(session, body.professional_id, admin.id)
        await session.commit()
        return {"message": "Acesso à agenda revogado"}


@router.get("/scheduling-access")
async def list_scheduling_access():
    async with AsyncSessionLocal() as session:
        return await access.list_professionals_access(session)


@router.get("/dependents")
async def list_all_dependents():
    async with AsyncSessionLocal() as session:
        rows = await patients.list_all_dependents(session)
        return [patients.serialize_dependent(d, client_name=name) for d, name in rows]


@router.post("/expire-subscriptions")
async def expire_subscriptions():
    async with AsyncSessionLocal() as session:
        result = await subscriptions.expire_subscriptions(session)
        await session.commit()
        return {"expired": result}


@router.get("/affiliates")
async def list_affiliates():
    async with AsyncSessionLocal() as session:
        return await affiliates.list_affiliates(session)


@router.get("/affiliates/financial-report")
async def affiliates_financial_report(start_date: Optional[date] = None, end_date: Optional[date] = None):
    async with AsyncSessionLocal() as session:
        return await affiliates.financial_report(session, start_date, end_date)


@router.put("/affiliates/{affiliate_id}")
async def update_affiliate(affiliate_id: int, body: AffiliateUpdate):
    async with AsyncSessionLocal() as session:
        affiliate = await affiliates.update_affiliate(session, affiliate_id, body.model_dump(exclude_unset=True))
        await session.commit()
        return affiliates.serialize_affiliate(affiliate)


@router.get("/affiliates/{affiliate_id}/commissions")
async def list_commissions(affiliate_id: int, status: Optional[str] = None):
    async with AsyncSessionLocal() as session:
        return await affiliates.list_commissions(session, affiliate_id, status)


@router.put("/affiliates/{affiliate_id}/commissions/{commission_id}/pay")
async def pay_commission(affiliate_id: int, commission_id: int,
                         paid_method: Optional[str] = Form(None), receipt: Optional[UploadFile] = File(None),
                         admin: CurrentUser = Depends(require_roles("admin")), host=Depends(get_image_host)):
    receipt_url = None
    if receipt is not None:
        data = await receipt.read()
        if not data:
            raise ValidationFailed("Comprovante vazio")
        uploaded = await host.upload(data, receipt.content_type or "image/jpeg", folder="receipts")
        receipt_url = uploaded["url"]
    async with AsyncSessionLocal() as session:
        commission = await affiliates.pay_commission(
            session, affiliate_id, commission_id, admin.id, paid_method=paid_method, receipt_url=receipt_url
        )
        await session.commit()
        return affiliates.serialize_commission(commission)
