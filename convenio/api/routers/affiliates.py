from fastapi import APIRouter, Depends
from convenio.api.schemas import ConvertRequest, LinkUserRequest, TrackRequest
from convenio.core.database import AsyncSessionLocal
from convenio.core.security import CurrentUser, get_current_user, require_roles
from convenio.services import affiliates

router = APIRouter(prefix="/api/affiliates", tags=["Affiliates"])


@router.post("/track")
async def track(body: TrackRequest):
    metadata = dict(body.metadata or {})
    if body.user_agent:
        metadata.setdefault("user_agent", body.user_agent)
    async with AsyncSessionLocal() as session:
        referral = await affiliates.track(session, body.referral_code, body.visitor_id, metadata)
        await session.commit()
        return {"referral_id": referral.id, "affiliate_id": referral.affiliate_id}


@router.post("/link-user")
async def link_user(body: LinkUserRequest, user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        referral = await affiliates.link_user(session, user.id, body.visitor_id)
        await session.commit()
        return {"linked": referral is not None, "referral_id": referral.id if referral else None}


@router.post("/convert")
async def convert(body: ConvertRequest, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        referral = await affiliates.convert(session, body.user_id)
        await session.commit()
        return {"converted": referral is not None, "referral_id": referral.id if referral else None}


@router.get("/my-referrals")
async def my_referrals(user: CurrentUser = Depends(require_roles(affiliates.AFFILIATE_ROLE))):
    async with AsyncSessionLocal() as session:
        return await affiliates.my_referrals(session, user.id)


@router.get("/all")
async def all_referrals(admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        return await affiliates.all_referrals(session)


@router.get("/check/{visitor_id}")
async def check_visitor(visitor_id: str):
    async with AsyncSessionLocal() as session:
        referral = await affiliates.check_visitor(session, visitor_id)
        if not referral:
            return {"has_referral": False}
        return {"has_referral": True, "affiliate_id": referral.affiliate_id, "referral_id": referral.id}


dashboard_router = APIRouter(prefix="/api/affiliate", tags=["Affiliates"])


@dashboard_router.get("/dashboard")
async def dashboard(user: CurrentUser = Depends(require_roles(affiliates.AFFILIATE_ROLE))):
    async with AsyncSessionLocal() as session:
        return await affiliates.dashboard(session, user.id)
