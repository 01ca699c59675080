"""Date-range reports.

Ranges are inclusive calendar days: ``[start, end]`` covers from
``start 00:00`` up to, but excluding, ``end + 1 day 00:00``. Revenue
aggregations skip cancelled consultations.
"""
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional
from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from convenio.core.errors import ValidationFailed
from convenio.core.security import CurrentUser
from convenio.models.models import (
    AttendanceLocation, Consultation, Dependent, PrivatePatient, Service, ServiceCategory, User,
)
from convenio.services.catalog import to_money
from convenio.services.consultations import split_revenue
from convenio.services.identity import role_filter


def money(value) -> float:
    return float(to_money(value or 0))


def _bounds(start: date, end: date):
    if start > end:
        raise ValidationFailed("Data inicial deve ser anterior à data final")
    return datetime.combine(start, time.min), datetime.combine(end + timedelta(days=1), time.min)


def _in_range(start: date, end: date):
    lower, upper = _bounds(start, end)
    return and_(Consultation.date >= lower, Consultation.date < upper)


def _is_convenio():
    return or_(Consultation.client_id.isnot(None), Consultation.dependent_id.isnot(None))


async def revenue_report(session: AsyncSession, start: date, end: date) -> dict:
    in_range = _in_range(start, end)
    active = Consultation.status != "cancelled"

    by_professional = (await session.execute(
        select(
            User.id, User.name, User.percentage,
            func.sum(Consultation.value), func.count(Consultation.id),
        )
        .join(User, Consultation.professional_id == User.id)
        .where(in_range, active)
        .group_by(User.id, User.name, User.percentage)
        .order_by(User.name)
    )).all()

    by_service = (await session.execute(
        select(Service.id, Service.name, func.sum(Consultation.value), func.count(Consultation.id))
        .join(Service, Consultation.service_id == Service.id)
        .where(in_range, active)
        .group_by(Service.id, Service.name)
        .order_by(Service.name)
    )).all()

    professionals = []
    total = Decimal("0.00")
    for professional_id, name, percentage, revenue, count in by_professional:
        revenue = to_money(revenue or 0)
        total += revenue
        professional_take, clinic_take = split_revenue(revenue, percentage or 0)
        professionals.append({
            "professional_id": professional_id,
            "professional_name": name,
            "professional_percentage": percentage or 0,
            "revenue": money(revenue),
            "consultation_count": count,
            "professional_payment": money(professional_take),
            "clinic_revenue": money(clinic_take),
        })

    return {
        "start_date": start.isoformat(),
        "end_date": end.isoformat(),
        "total_revenue": money(total),
        "revenue_by_professional": professionals,
        "revenue_by_service": [
            {"service_id": sid, "service_name": sname, "revenue": money(rev), "consultation_count": count}
            for sid, sname, rev, count in by_service
        ],
    }


async def professional_revenue(session: AsyncSession, professional_id: int, start: date, end: date) -> dict:
    professional = (await session.execute(select(User).where(User.id == professional_id))).scalar()
    percentage = (professional.percentage if professional else None) or 0

    client = aliased(User)
    rows = (await session.execute(
        select(
            Consultation,
            client.name, Dependent.name, PrivatePatient.name, Service.name,
        )
        .outerjoin(client, Consultation.client_id == client.id)
        .outerjoin(Dependent, Consultation.dependent_id == Dependent.id)
        .outerjoin(PrivatePatient, Consultation.private_patient_id == PrivatePatient.id)
        .join(Service, Consultation.service_id == Service.id)
        .where(
            Consultation.professional_id == professional_id,
            Consultation.status != "cancelled",
            _in_range(start, end),
        )
        .order_by(Consultation.date.desc(), Consultation.id.desc())
    )).all()

    consultations = []
    total = Decimal("0.00")
    convenio_total = Decimal("0.00")
    for c, client_name, dependent_name, private_name, service_name in rows:
        value = to_money(c.value)
        convenio = c.private_patient_id is None
        amount_to_pay = split_revenue(value, percentage)[1] if convenio else Decimal("0.00")
        total += value
        if convenio:
            convenio_total += value
        consultations.append({
            "id": c.id,
            "date": c.date.isoformat(),
            "client_name": client_name or dependent_name or private_name,
            "service_name": service_name,
            "total_value": money(value),
            "amount_to_pay": money(amount_to_pay),
            "is_convenio": convenio,
        })

    return {
        "summary": {
            "professional_percentage": percentage,
            "total_revenue": money(total),
            "consultation_count": len(consultations),
            # Owed on the summed convenio revenue, as in the detailed report
            "amount_to_pay": money(split_revenue(convenio_total, percentage)[1]),
        },
        "consultations": consultations,
    }


async def professional_detailed(session: AsyncSession, professional_id: int, start: date, end: date) -> dict:
    professional = (await session.execute(select(User).where(User.id == professional_id))).scalar()
    percentage = (professional.percentage if professional else None) or 0
    convenio = _is_convenio()

    row = (await session.execute(
        select(
            func.sum(case((convenio, 1), else_=0)),
            func.sum(case((convenio, Consultation.value), else_=0)),
            func.sum(case((convenio, 0), else_=1)),
            func.sum(case((convenio, 0), else_=Consultation.value)),
        )
        .where(
            Consultation.professional_id == professional_id,
            Consultation.status != "cancelled",
            _in_range(start, end),
        )
    )).first()
    convenio_count, convenio_revenue, private_count, private_revenue = row
    convenio_revenue = to_money(convenio_revenue or 0)
    private_revenue = to_money(private_revenue or 0)

    return {
        "summary": {
            "total_consultations": int(convenio_count or 0) + int(private_count or 0),
            "convenio_consultations": int(convenio_count or 0),
            "private_consultations": int(private_count or 0),
            "total_revenue": money(convenio_revenue + private_revenue),
            "convenio_revenue": money(convenio_revenue),
            "private_revenue": money(private_revenue),
            "professional_percentage": percentage,
            "amount_to_pay": money(split_revenue(convenio_revenue, percentage)[1]),
        },
    }


async def cancelled_consultations(session: AsyncSession, actor: CurrentUser, start: date, end: date,
                                  professional_id: Optional[int] = None) -> list:
    client = aliased(User)
    professional = aliased(User)
    canceller = aliased(User)
    q = (
        select(
            Consultation,
            client.name, Dependent.name, PrivatePatient.name,
            professional.name, Service.name, AttendanceLocation.name, canceller.name,
        )
        .outerjoin(client, Consultation.client_id == client.id)
        .outerjoin(Dependent, Consultation.dependent_id == Dependent.id)
        .outerjoin(PrivatePatient, Consultation.private_patient_id == PrivatePatient.id)
        .join(professional, Consultation.professional_id == professional.id)
        .join(Service, Consultation.service_id == Service.id)
        .outerjoin(AttendanceLocation, Consultation.location_id == AttendanceLocation.id)
        .outerjoin(canceller, Consultation.cancelled_by == canceller.id)
        .where(Consultation.status == "cancelled", _in_range(start, end))
    )
    if not actor.is_admin:
        q = q.where(Consultation.professional_id == actor.id)
    elif professional_id:
        q = q.where(Consultation.professional_id == professional_id)

    rows = (await session.execute(q.order_by(Consultation.cancelled_at.desc(), Consultation.id.desc()))).all()
    return [
        {
            "id": c.id,
            "date": c.date.isoformat(),
            "value": money(c.value),
            "patient_name": client_name or dependent_name or private_name,
            "patient_type": "client" if c.client_id else ("dependent" if c.dependent_id else "private"),
            "professional_id": c.professional_id,
            "professional_name": professional_name,
            "service_name": service_name,
            "location_name": location_name,
            "cancelled_at": c.cancelled_at.isoformat() if c.cancelled_at else None,
            "cancelled_by": c.cancelled_by,
            "cancelled_by_name": cancelled_by_name,
            "cancellation_reason": c.cancellation_reason,
        }
        for c, client_name, dependent_name, private_name, professional_name, service_name,
            location_name, cancelled_by_name in rows
    ]


def _has_city():
    return and_(User.city.isnot(None), func.trim(User.city) != "")


async def clients_by_city(session: AsyncSession) -> list:
    rows = (await session.execute(
        select(
            User.city, User.state,
            func.count(User.id),
            func.sum(case((User.subscription_status == "active", 1), else_=0)),
            func.sum(case((User.subscription_status == "pending", 1), else_=0)),
            func.sum(case((User.subscription_status == "expired", 1), else_=0)),
        )
        .where(role_filter("client"), _has_city())
        .group_by(User.city, User.state)
        .order_by(func.count(User.id).desc(), User.city)
    )).all()
    return [
        {
            "city": city,
            "state": state,
            "client_count": total,
            "active_clients": int(active or 0),
            "pending_clients": int(pending or 0),
            "expired_clients": int(expired or 0),
        }
        for city, state, total, active, pending, expired in rows
    ]


async def professionals_by_city(session: AsyncSession) -> list:
    rows = (await session.execute(
        select(User.city, User.state, ServiceCategory.name, func.count(User.id))
        .outerjoin(ServiceCategory, User.category_id == ServiceCategory.id)
        .where(role_filter("professional"), _has_city())
        .group_by(User.city, User.state, ServiceCategory.name)
    )).all()

    cities = OrderedDict()
    for city, state, category, count in rows:
        entry = cities.setdefault((city, state), {"city": city, "state": state, "total_professionals": 0, "categories": []})
        entry["total_professionals"] += count
        entry["categories"].append({"category_name": category or "Sem categoria", "count": count})
    result = sorted(cities.values(), key=lambda e: (-e["total_professionals"], e["city"]))
    for entry in result:
        entry["categories"].sort(key=lambda c: (-c["count"], c["category_name"]))
    return result
