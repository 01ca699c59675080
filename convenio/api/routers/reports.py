from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends
from convenio.core.database import AsyncSessionLocal
from convenio.core.security import CurrentUser, acting_professional, require_roles
from convenio.services import reports

router = APIRouter(prefix="/api/reports", tags=["Reports"])

admin_only = require_roles("admin")
staff = require_roles("professional", "admin")


@router.get("/revenue")
async def revenue(start_date: date, end_date: date, admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        return await reports.revenue_report(session, start_date, end_date)


@router.get("/professional-revenue")
async def professional_revenue(start_date: date, end_date: date, professional_id: Optional[int] = None,
                               user: CurrentUser = Depends(staff)):
    professional_id = acting_professional(user, professional_id)
    async with AsyncSessionLocal() as session:
        return await reports.professional_revenue(session, professional_id, start_date, end_date)


@router.get("/professional-detailed")
async def professional_detailed(start_date: date, end_date: date, professional_id: Optional[int] = None,
                                user: CurrentUser = Depends(staff)):
    professional_id = acting_professional(user, professional_id)
    async with AsyncSessionLocal() as session:
        return await reports.professional_detailed(session, professional_id, start_date, end_date)


@router.get("/cancelled-consultations")
async def cancelled_consultations(start_date: date, end_date: date, professional_id: Optional[int] = None,
                                  user: CurrentUser = Depends(staff)):
    async with AsyncSessionLocal() as session:
        return await reports.cancelled_consultations(session, user, start_date, end_date, professional_id)


@router.get("/clients-by-city")
async def clients_by_city(admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        return await reports.clients_by_city(session)


@router.get("/professionals-by-city")
async def professionals_by_city(admin: CurrentUser = Depends(admin_only)):
    async with AsyncSessionLocal() as session:
        return await reports.professionals_by_city(session)
