"""Affiliate attribution.

A referral goes through three stages: anonymous (a tracked click), bound
(the visitor registered) and converted (the subscription was paid).
Clicks are de-duplicated by visitor identifier and, within a 7-day window,
by the browser user agent.
"""
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Optional
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from convenio.core import config
from convenio.core.database import utc_now
from convenio.core.errors import InvalidCode, NotFound, ValidationFailed
from convenio.models.models import AffiliateCommission, AffiliateReferral, User
from convenio.services.catalog import to_money
from convenio.services.identity import role_filter

logger = logging.getLogger(__name__)

AFFILIATE_ROLE = "vendedor"
FINGERPRINT_WINDOW = timedelta(days=7)


def normalize_metadata(metadata: Optional[dict]) -> dict:
    data = dict(metadata or {})
    agent = data.pop("userAgent", None)
    if agent and not data.get("user_agent"):
        data["user_agent"] = agent
    return data


async def resolve_affiliate(session: AsyncSession, referral_code) -> User:
    code = str(referral_code or "").strip()
    if not code.isdigit():
        raise InvalidCode()
    affiliate = (await session.execute(select(User).where(User.id == int(code)))).scalar()
    if not affiliate or not affiliate.has_role(AFFILIATE_ROLE):
        raise InvalidCode()
    return affiliate


async def track(session: AsyncSession, referral_code, visitor_identifier: str, metadata: Optional[dict] = None) -> AffiliateReferral:
    visitor_identifier = (visitor_identifier or "").strip()
    if not visitor_identifier:
        raise ValidationFailed("Identificador do visitante é obrigatório")
    affiliate = await resolve_affiliate(session, referral_code)
    metadata = normalize_metadata(metadata)

    existing = (await session.execute(
        select(AffiliateReferral)
        .where(
            AffiliateReferral.visitor_identifier == visitor_identifier,
            AffiliateReferral.affiliate_id == affiliate.id,
            AffiliateReferral.user_id.is_(None),
        )
        .order_by(AffiliateReferral.created_at, AffiliateReferral.id)
        .limit(1)
    )).scalar()
    if existing:
        return existing

    agent = metadata.get("user_agent")
    if agent:
        recent = (await session.execute(
            select(AffiliateReferral)
            .where(
                AffiliateReferral.affiliate_id == affiliate.id,
                AffiliateReferral.created_at > utc_now() - FINGERPRINT_WINDOW,
            )
            .order_by(AffiliateReferral.created_at, AffiliateReferral.id)
        )).scalars().all()
        for referral in recent:
            if normalize_metadata(referral.referral_metadata).get("user_agent") == agent:
                logger.info("Referral %s matched by fingerprint for visitor %s", referral.id, visitor_identifier)
                return referral

    referral = AffiliateReferral(
        affiliate_id=affiliate.id,
        visitor_identifier=visitor_identifier,
        referral_code=str(referral_code).strip(),
        referral_metadata=metadata,
        converted=False,
    )
    session.add(referral)
    await session.flush()
    logger.info("Referral %s tracked for affiliate %s", referral.id, affiliate.id)
    return referral


async def link_user(session: AsyncSession, user_id: int, visitor_identifier: str) -> Optional[AffiliateReferral]:
    """Bind the most recent anonymous referral of the visitor to ``user_id``."""
    if not visitor_identifier:
        return None
    referral = (await session.execute(
        select(AffiliateReferral)
        .where(
            AffiliateReferral.visitor_identifier == visitor_identifier,
            AffiliateReferral.user_id.is_(None),
        )
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .limit(1)
    )).scalar()
    if not referral:
        return None

    user = (await session.execute(select(User).where(User.id == user_id))).scalar()
    if not user:
        return None
    referral.user_id = user.id
    user.referred_by_affiliate_id = referral.affiliate_id
    user.affiliate_referral_id = referral.id
    await session.flush()
    logger.info("Referral %s bound to user %s", referral.id, user_id)
    return referral


async def convert(session: AsyncSession, user_id: int, payment_reference: Optional[str] = None) -> Optional[AffiliateReferral]:
    """Mark the user's bound referral as converted and owe its affiliate a commission. Safe to repeat."""
    user = (await session.execute(select(User).where(User.id == user_id))).scalar()
    q = select(AffiliateReferral).where(AffiliateReferral.user_id == user_id)
    if user and user.affiliate_referral_id:
        q = q.where(AffiliateReferral.id == user.affiliate_referral_id)
    referral = (await session.execute(
        q.order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc()).limit(1)
    )).scalar()
    if not referral:
        return None
    if not referral.converted:
        referral.converted = True
        referral.converted_at = utc_now()
        await _owe_commission(session, referral, payment_reference)
        await session.flush()
        logger.info("Referral %s converted by user %s", referral.id, user_id)
    return referral


async def _owe_commission(session: AsyncSession, referral: AffiliateReferral, payment_reference: Optional[str]):
    affiliate = (await session.execute(select(User).where(User.id == referral.affiliate_id))).scalar()
    if not affiliate:
        return
    amount = commission_amount(affiliate)
    if amount <= 0:
        return
    exists = (await session.execute(
        select(AffiliateCommission.id).where(AffiliateCommission.referral_id == referral.id)
    )).first()
    if exists:
        return
    session.add(AffiliateCommission(
        affiliate_id=affiliate.id,
        client_id=referral.user_id,
        referral_id=referral.id,
        amount=amount,
        status="pending",
        payment_reference=payment_reference,
    ))
    logger.info("Commission of %s owed to affiliate %s for referral %s", amount, affiliate.id, referral.id)


def commission_amount(affiliate: User) -> Decimal:
    if affiliate.commission_amount is None:
        return config.DEFAULT_AFFILIATE_COMMISSION
    return to_money(affiliate.commission_amount)


async def my_referrals(session: AsyncSession, affiliate_id: int) -> dict:
    referred = aliased(User)
    res = await session.execute(
        select(AffiliateReferral, referred.name)
        .outerjoin(referred, AffiliateReferral.user_id == referred.id)
        .where(AffiliateReferral.affiliate_id == affiliate_id)
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
    )
    rows = res.all()
    referrals = [serialize_referral(r, user_name=name) for r, name in rows]
    return {
        "referrals": referrals,
        "stats": {
            "total_clicks": len(rows),
            "total_registrations": sum(1 for r, _ in rows if r.user_id),
            "total_conversions": sum(1 for r, _ in rows if r.converted),
        },
    }


async def all_referrals(session: AsyncSession, limit: int = 1000):
    affiliate = aliased(User)
    referred = aliased(User)
    res = await session.execute(
        select(AffiliateReferral, affiliate.name, referred.name)
        .join(affiliate, AffiliateReferral.affiliate_id == affiliate.id)
        .outerjoin(referred, AffiliateReferral.user_id == referred.id)
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .limit(limit)
    )
    return [serialize_referral(r, affiliate_name=a, user_name=u) for r, a, u in res.all()]


async def check_visitor(session: AsyncSession, visitor_identifier: str) -> Optional[AffiliateReferral]:
    return (await session.execute(
        select(AffiliateReferral)
        .where(
            AffiliateReferral.visitor_identifier == visitor_identifier,
            AffiliateReferral.user_id.is_(None),
        )
        .order_by(AffiliateReferral.created_at.desc(), AffiliateReferral.id.desc())
        .limit(1)
    )).scalar()


def serialize_referral(r: AffiliateReferral, affiliate_name=None, user_name=None) -> dict:
    data = {
        "id": r.id,
        "affiliate_id": r.affiliate_id,
        "visitor_identifier": r.visitor_identifier,
        "referral_code": r.referral_code,
        "metadata": r.referral_metadata or {},
        "user_id": r.user_id,
        "converted": bool(r.converted),
        "converted_at": r.converted_at.isoformat() if r.converted_at else None,
        "created_at": r.created_at.isoformat() if r.created_at else None,
    }
    if affiliate_name is not None:
        data["affiliate_name"] = affiliate_name
    if user_name is not None:
        data["user_name"] = user_name
    return data


def _commission_totals():
    return (
        func.count(AffiliateCommission.id),
        func.sum(case((AffiliateCommission.status == "pending", AffiliateCommission.amount), else_=0)),
        func.sum(case((AffiliateCommission.status == "paid", AffiliateCommission.amount), else_=0)),
    )


async def list_affiliates(session: AsyncSession) -> list:
    totals = (
        select(AffiliateCommission.affiliate_id, *_commission_totals())
        .group_by(AffiliateCommission.affiliate_id)
    )
    rows = {r[0]: r[1:] for r in (await session.execute(totals)).all()}
    affiliates = (await session.execute(
        select(User).where(role_filter(AFFILIATE_ROLE)).order_by(User.name)
    )).scalars().all()
    result = []
    for affiliate in affiliates:
        count, pending, paid = rows.get(affiliate.id, (0, 0, 0))
        result.append({
            **serialize_affiliate(affiliate),
            "clients_count": int(count or 0),
            "pending_total": float(to_money(pending or 0)),
            "paid_total": float(to_money(paid or 0)),
        })
    return result


async def get_affiliate(session: AsyncSession, affiliate_id: int) -> User:
    affiliate = (await session.execute(select(User).where(User.id == affiliate_id))).scalar()
    if not affiliate or not affiliate.has_role(AFFILIATE_ROLE):
        raise NotFound("Vendedor não encontrado")
    return affiliate


async def update_affiliate(session: AsyncSession, affiliate_id: int, changes: dict) -> User:
    affiliate = await get_affiliate(session, affiliate_id)
    if changes.get("commission_amount") is not None:
        amount = to_money(changes["commission_amount"])
        if amount < 0:
            raise ValidationFailed("Comissão não pode ser negativa")
        affiliate.commission_amount = amount
    if "pix_key" in changes:
        affiliate.pix_key = (changes["pix_key"] or "").strip() or None
    await session.flush()
    return affiliate


async def list_commissions(session: AsyncSession, affiliate_id: int, status: Optional[str] = None) -> list:
    await get_affiliate(session, affiliate_id)
    client = aliased(User)
    payer = aliased(User)
    q = (
        select(AffiliateCommission, client.name, client.national_id, payer.name)
        .join(client, AffiliateCommission.client_id == client.id)
        .outerjoin(payer, AffiliateCommission.paid_by == payer.id)
        .where(AffiliateCommission.affiliate_id == affiliate_id)
    )
    if status:
        q = q.where(AffiliateCommission.status == status)
    rows = (await session.execute(q.order_by(AffiliateCommission.created_at.desc(), AffiliateCommission.id.desc()))).all()
    return [
        serialize_commission(c, client_name=name, client_cpf=cpf, paid_by_name=paid_by)
        for c, name, cpf, paid_by in rows
    ]


async def pay_commission(session: AsyncSession, affiliate_id: int, commission_id: int, admin_id: int,
                         paid_method: Optional[str] = None, receipt_url: Optional[str] = None) -> AffiliateCommission:
    commission = (await session.execute(
        select(AffiliateCommission).where(
            AffiliateCommission.id == commission_id,
            AffiliateCommission.affiliate_id == affiliate_id,
        )
    )).scalar()
    if not commission:
        raise NotFound("Comissão não encontrada")
    if commission.status == "paid":
        raise ValidationFailed("Comissão já está paga")
    commission.status = "paid"
    commission.paid_at = utc_now()
    commission.paid_by = admin_id
    commission.paid_method = (paid_method or "").strip() or None
    commission.paid_receipt_url = receipt_url
    await session.flush()
    logger.info("Commission %s paid to affiliate %s by admin %s", commission_id, affiliate_id, admin_id)
    return commission


async def financial_report(session: AsyncSession, start: Optional[date] = None, end: Optional[date] = None) -> dict:
    """Commissions per affiliate, optionally limited to those created in ``[start, end]``."""
    q = (
        select(User.id, User.name, User.pix_key, *_commission_totals())
        .select_from(AffiliateCommission)
        .join(User, AffiliateCommission.affiliate_id == User.id)
        .group_by(User.id, User.name, User.pix_key)
        .order_by(User.name)
    )
    if start and end and start > end:
        raise ValidationFailed("Data inicial deve ser anterior à data final")
    if start:
        q = q.where(AffiliateCommission.created_at >= datetime.combine(start, time.min))
    if end:
        q = q.where(AffiliateCommission.created_at < datetime.combine(end + timedelta(days=1), time.min))

    affiliates = []
    pending_total = paid_total = Decimal("0.00")
    for affiliate_id, name, pix_key, count, pending, paid in (await session.execute(q)).all():
        pending, paid = to_money(pending or 0), to_money(paid or 0)
        pending_total += pending
        paid_total += paid
        affiliates.append({
            "affiliate_id": affiliate_id,
            "affiliate_name": name,
            "pix_key": pix_key,
            "commissions_count": int(count or 0),
            "pending_total": float(pending),
            "paid_total": float(paid),
        })
    return {
        "start_date": start.isoformat() if start else None,
        "end_date": end.isoformat() if end else None,
        "affiliates": affiliates,
        "totals": {
            "pending": float(pending_total),
            "paid": float(paid_total),
            "overall": float(pending_total + paid_total),
        },
    }


async def dashboard(session: AsyncSession, affiliate_id: int) -> dict:
    affiliate = await get_affiliate(session, affiliate_id)
    referrals = await my_referrals(session, affiliate_id)
    commissions = await list_commissions(session, affiliate_id)
    totals = {"pending": Decimal("0.00"), "paid": Decimal("0.00")}
    for c in commissions:
        totals[c["status"]] += to_money(c["amount"])
    return {
        **serialize_affiliate(affiliate),
        "stats": referrals["stats"],
        "pending_total": float(totals["pending"]),
        "paid_total": float(totals["paid"]),
        "commissions": commissions[:20],
    }


def serialize_affiliate(affiliate: User) -> dict:
    return {
        "id": affiliate.id,
        "name": affiliate.name,
        "code": str(affiliate.id),
        "commission_amount": float(commission_amount(affiliate)),
        "pix_key": affiliate.pix_key,
    }


def serialize_commission(c: AffiliateCommission, client_name=None, client_cpf=None, paid_by_name=None) -> dict:
    return {
        "id": c.id,
        "affiliate_id": c.affiliate_id,
        "client_id": c.client_id,
        "client_name": client_name,
        "client_cpf": client_cpf,
        "amount": float(c.amount),
        "status": c.status,
        "payment_reference": c.payment_reference,
        "paid_at": c.paid_at.isoformat() if c.paid_at else None,
        "paid_by_name": paid_by_name,
        "paid_method": c.paid_method,
        "paid_receipt_url": c.paid_receipt_url,
        "created_at": c.created_at.isoformat() if c.created_at else None,
    }
