"""Discount coupons for subscriptions (``titular``) and dependent activations (``dependente``)."""
import logging
from datetime import date
from decimal import Decimal
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.database import utc_now
from convenio.core.errors import CouponInvalid, DuplicateIdentifier, InUse, NotFound, ValidationFailed
from convenio.models.models import Coupon, CouponUsage
from convenio.services.catalog import to_money

logger = logging.getLogger(__name__)

COUPON_TYPES = ("titular", "dependente")


def normalize_code(code) -> str:
    return str(code or "").strip().upper()


def _check_fields(data: dict):
    if "coupon_type" in data and data["coupon_type"] not in COUPON_TYPES:
        raise ValidationFailed("Tipo de cupom inválido")
    if "discount_value" in data and to_money(data["discount_value"]) <= 0:
        raise ValidationFailed("Desconto deve ser maior que zero")
    start, end = data.get("valid_from"), data.get("valid_until")
    if start and end and start > end:
        raise ValidationFailed("Data inicial deve ser anterior à data final")


async def list_coupons(session: AsyncSession):
    usage = (
        select(CouponUsage.coupon_id, func.count(CouponUsage.id).label("uses"))
        .group_by(CouponUsage.coupon_id)
        .subquery()
    )
    res = await session.execute(
        select(Coupon, usage.c.uses)
        .outerjoin(usage, usage.c.coupon_id == Coupon.id)
        .order_by(Coupon.created_at.desc(), Coupon.id.desc())
    )
    return [serialize_coupon(c, uses=int(uses or 0)) for c, uses in res.all()]


async def get_coupon(session: AsyncSession, coupon_id: int) -> Coupon:
    coupon = (await session.execute(select(Coupon).where(Coupon.id == coupon_id))).scalar()
    if not coupon:
        raise NotFound("Cupom não encontrado")
    return coupon


async def create_coupon(session: AsyncSession, admin_id: int, data: dict) -> Coupon:
    code = normalize_code(data.get("code"))
    if not code:
        raise ValidationFailed("Código do cupom é obrigatório")
    data = {**data, "coupon_type": data.get("coupon_type") or "titular"}
    _check_fields(data)
    if (await session.execute(select(Coupon.id).where(Coupon.code == code))).first():
        raise DuplicateIdentifier("Cupom já existe")
    coupon = Coupon(
        code=code,
        coupon_type=data["coupon_type"],
        discount_value=to_money(data.get("discount_value")),
        valid_from=data.get("valid_from"),
        valid_until=data.get("valid_until"),
        description=data.get("description"),
        unlimited_use=data.get("unlimited_use", True),
        is_active=data.get("is_active", True),
        created_by=admin_id,
    )
    session.add(coupon)
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateIdentifier("Cupom já existe")
    logger.info("Coupon %s created by admin %s", code, admin_id)
    return coupon


async def update_coupon(session: AsyncSession, coupon_id: int, changes: dict) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    # Only dates and description can be cleared
    changes = {k: v for k, v in changes.items() if v is not None or k in ("valid_from", "valid_until", "description")}
    _check_fields({
        "valid_from": coupon.valid_from,
        "valid_until": coupon.valid_until,
        **changes,
    })
    if "code" in changes:
        code = normalize_code(changes["code"])
        if not code:
            raise ValidationFailed("Código do cupom é obrigatório")
        taken = (await session.execute(select(Coupon.id).where(Coupon.code == code, Coupon.id != coupon.id))).first()
        if taken:
            raise DuplicateIdentifier("Cupom já existe")
        coupon.code = code
    if "discount_value" in changes:
        coupon.discount_value = to_money(changes["discount_value"])
    for field in ("coupon_type", "valid_from", "valid_until", "description", "unlimited_use", "is_active"):
        if field in changes:
            setattr(coupon, field, changes[field])
    await session.flush()
    return coupon


async def toggle_coupon(session: AsyncSession, coupon_id: int) -> Coupon:
    coupon = await get_coupon(session, coupon_id)
    coupon.is_active = not coupon.is_active
    await session.flush()
    return coupon


async def delete_coupon(session: AsyncSession, coupon_id: int):
    coupon = await get_coupon(session, coupon_id)
    used = (await session.execute(select(CouponUsage.id).where(CouponUsage.coupon_id == coupon.id).limit(1))).first()
    if used:
        raise InUse("Cupom já utilizado, desative-o em vez de excluir")
    await session.delete(coupon)
    await session.flush()


async def validate_coupon(session: AsyncSession, code, user_id: int, coupon_type: Optional[str] = None,
                          today: Optional[date] = None) -> Coupon:
    """The usable coupon for ``code``; raises ``CouponInvalid`` with the reason otherwise."""
    today = today or utc_now().date()
    coupon = (await session.execute(select(Coupon).where(Coupon.code == normalize_code(code)))).scalar()
    if not coupon or not coupon.is_active:
        raise CouponInvalid()
    if coupon_type and coupon.coupon_type != coupon_type:
        raise CouponInvalid("Cupom não se aplica a este pagamento")
    if coupon.valid_from and today < coupon.valid_from:
        raise CouponInvalid("Cupom ainda não está válido")
    if coupon.valid_until and today > coupon.valid_until:
        raise CouponInvalid("Cupom expirado")
    if not coupon.unlimited_use:
        used = (await session.execute(
            select(CouponUsage.id).where(CouponUsage.coupon_id == coupon.id, CouponUsage.user_id == user_id).limit(1)
        )).first()
        if used:
            raise CouponInvalid("Cupom já utilizado")
    return coupon


def apply_discount(amount: Decimal, coupon: Optional[Coupon]) -> Decimal:
    if coupon is None:
        return amount
    discounted = to_money(amount) - to_money(coupon.discount_value)
    if discounted <= 0:
        raise CouponInvalid("Desconto maior que o valor do pagamento")
    return discounted


def record_usage(session: AsyncSession, coupon_id: int, user_id: int, payment_reference: Optional[str]):
    session.add(CouponUsage(coupon_id=coupon_id, user_id=user_id, payment_reference=payment_reference))


def serialize_coupon(coupon: Coupon, uses: Optional[int] = None) -> dict:
    data = {
        "id": coupon.id,
        "code": coupon.code,
        "coupon_type": coupon.coupon_type,
        "discount_value": float(coupon.discount_value),
        "valid_from": coupon.valid_from.isoformat() if coupon.valid_from else None,
        "valid_until": coupon.valid_until.isoformat() if coupon.valid_until else None,
        "description": coupon.description,
        "unlimited_use": bool(coupon.unlimited_use),
        "is_active": bool(coupon.is_active),
        "created_at": coupon.created_at.isoformat() if coupon.created_at else None,
    }
    if uses is not None:
        data["uses"] = uses
    return data
