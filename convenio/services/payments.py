"""Payment intents and webhook reconciliation.

Every intent is a gateway preference plus a local ``pending`` row whose
``external_reference`` encodes the flavor and the target::

    subscription_{user_id}_{ms}
    dependent_{dependent_id}_{ms}
    professional_{user_id}_{ms}
    agenda_{user_id}_{days}_{ms}

The webhook never trusts the notification body: the payment is fetched from
the gateway and the gateway payment id is the idempotency key.
"""
import logging
import time
from decimal import Decimal
from typing import Optional, Tuple
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core import config
from convenio.core.database import utc_now
from convenio.core.errors import Forbidden, ValidationFailed
from convenio.core.security import CurrentUser
from convenio.models.models import (
    AgendaPayment, ClientPayment, Dependent, DependentPayment, ProfessionalPayment, User,
)
from convenio.services import access, affiliates, coupons
from convenio.services.catalog import to_money
from convenio.services.identity import add_years, get_user
from convenio.services.notifications import notify
from convenio.services.patients import count_dependents, get_dependent

logger = logging.getLogger(__name__)

FLAVOR_MODELS = {
    "subscription": (ClientPayment, "user_id"),
    "dependent": (DependentPayment, "dependent_id"),
    "professional": (ProfessionalPayment, "professional_id"),
    "agenda": (AgendaPayment, "professional_id"),
}
FAILED_STATUSES = ("rejected", "cancelled", "refunded", "charged_back")
STATEMENT_DESCRIPTOR = "CONVENIO SAUDE"


def now_ms() -> int:
    return int(time.time() * 1000)


def build_external_reference(flavor: str, target_id: int, *extra) -> str:
    parts = [flavor, str(target_id)] + [str(e) for e in extra] + [str(now_ms())]
    return "_".join(parts)


def parse_external_reference(reference: Optional[str]) -> Tuple[str, int, Optional[int]]:
    """Returns ``(flavor, target_id, extra)``; extra is the day count of agenda purchases."""
    parts = (reference or "").split("_")
    if len(parts) < 3 or parts[0] not in FLAVOR_MODELS or not parts[1].isdigit():
        raise ValidationFailed(f"Referência externa inválida: {reference}")
    extra = None
    if parts[0] == "agenda":
        if len(parts) < 4 or not parts[2].isdigit():
            raise ValidationFailed(f"Referência externa inválida: {reference}")
        extra = int(parts[2])
    return parts[0], int(parts[1]), extra


def subscription_amount(dependent_count: int) -> Decimal:
    return config.SUBSCRIPTION_BASE_PRICE + config.DEPENDENT_PRICE * dependent_count


def _back_urls(path: str) -> dict:
    base = f"{config.FRONTEND_URL}{path}"
    return {
        "success": f"{base}?payment=success",
        "failure": f"{base}?payment=failure",
        "pending": f"{base}?payment=pending",
    }


def build_preference(title: str, amount: Decimal, external_reference: str, payer: User, return_path: str) -> dict:
    return {
        "items": [
            {
                "title": title,
                "quantity": 1,
                "unit_price": float(amount),
                "currency_id": "BRL"
            }
        ],
        "payer": {
            "name": payer.name,
            "email": payer.email,
            "identification": {"type": "CPF", "number": payer.national_id},
        },
        "back_urls": _back_urls(return_path),
        "auto_return": "approved",
        "external_reference": external_reference,
        "notification_url": f"{config.API_URL}/api/webhooks/mercadopago",
        "statement_descriptor": STATEMENT_DESCRIPTOR,
    }


async def _open_intent(session, gateway, model, payer_column, payer_id, amount, reference, preference, **extra) -> dict:
    created = await gateway.create_preference(preference)
    row = model(
        amount=amount,
        status="pending",
        external_reference=reference,
        gateway_preference_id=created["id"],
        **{payer_column: payer_id},
        **extra,
    )
    session.add(row)
    await session.flush()
    logger.info("Payment intent %s opened (%s)", reference, amount)
    return {
        "payment_id": row.id,
        "preference_id": created["id"],
        "init_point": created["init_point_url"],
        "external_reference": reference,
        "amount": float(amount),
    }


async def _coupon_for(session: AsyncSession, code, user_id: int, coupon_type: str):
    if not code:
        return None
    return await coupons.validate_coupon(session, code, user_id, coupon_type)


def _with_coupon(intent: dict, coupon) -> dict:
    if coupon is not None:
        intent["coupon_code"] = coupon.code
        intent["discount"] = float(coupon.discount_value)
    return intent


async def create_subscription_intent(session: AsyncSession, gateway, user_id: int, coupon_code: Optional[str] = None) -> dict:
    user = await get_user(session, user_id)
    if not user.has_role("client"):
        raise Forbidden("Apenas clientes podem assinar o convênio")
    coupon = await _coupon_for(session, coupon_code, user.id, "titular")
    dependents = await count_dependents(session, user.id)
    amount = coupons.apply_discount(subscription_amount(dependents), coupon)
    reference = build_external_reference("subscription", user.id)
    title = f"Assinatura Convênio Saúde - titular + {dependents} dependente(s)"
    preference = build_preference(title, amount, reference, user, "/client")
    intent = await _open_intent(
        session, gateway, ClientPayment, "user_id", user.id, amount, reference, preference,
        coupon_id=coupon.id if coupon else None,
    )
    return _with_coupon(intent, coupon)


async def create_dependent_intent(session: AsyncSession, gateway, actor: CurrentUser, dependent_id: int,
                                  coupon_code: Optional[str] = None) -> dict:
    dependent = await get_dependent(session, actor, dependent_id)
    if dependent.subscription_status == "active":
        raise ValidationFailed("Dependente já está ativo")
    client = await get_user(session, dependent.client_id)
    coupon = await _coupon_for(session, coupon_code, client.id, "dependente")
    amount = coupons.apply_discount(to_money(dependent.billing_amount or config.DEPENDENT_PRICE), coupon)
    reference = build_external_reference("dependent", dependent.id)
    preference = build_preference(f"Ativação de dependente - {dependent.name}", amount, reference, client, "/client")
    intent = await _open_intent(
        session, gateway, DependentPayment, "dependent_id", dependent.id, amount, reference, preference,
        coupon_id=coupon.id if coupon else None,
    )
    return _with_coupon(intent, coupon)


async def create_professional_intent(session: AsyncSession, gateway, professional_id: int, amount) -> dict:
    amount = to_money(amount)
    if amount <= 0:
        raise ValidationFailed("Valor deve ser maior que zero")
    professional = await get_user(session, professional_id)
    reference = build_external_reference("professional", professional.id)
    preference = build_preference("Repasse ao Convênio Saúde", amount, reference, professional, "/professional")
    return await _open_intent(
        session, gateway, ProfessionalPayment, "professional_id", professional.id, amount, reference, preference
    )


async def create_agenda_intent(session: AsyncSession, gateway, professional_id: int) -> dict:
    professional = await get_user(session, professional_id)
    days = config.AGENDA_ACCESS_DAYS
    amount = config.AGENDA_ACCESS_PRICE
    reference = build_external_reference("agenda", professional.id, days)
    preference = build_preference(f"Acesso à agenda - {days} dias", amount, reference, professional, "/professional/agenda")
    return await _open_intent(
        session, gateway, AgendaPayment, "professional_id", professional.id, amount, reference, preference,
        duration_days=days,
    )


async def _already_paid(session: AsyncSession, payment_id: str) -> bool:
    for model, _ in FLAVOR_MODELS.values():
        row = (await session.execute(
            select(model.id).where(model.gateway_payment_id == payment_id, model.status == "paid").limit(1)
        )).first()
        if row:
            return True
    return False


async def _apply_approval(session: AsyncSession, flavor: str, target_id: int, extra, payment: dict) -> bool:
    now = utc_now()
    if flavor == "subscription":
        user = (await session.execute(select(User).where(User.id == target_id))).scalar()
        if not user:
            return False
        user.subscription_status = "active"
        user.subscription_expiry = add_years(now, config.SUBSCRIPTION_YEARS)
        await affiliates.convert(session, user.id, payment_reference=payment["id"])
        notify(session, user.id, "Assinatura ativada", "Seu pagamento foi aprovado e sua assinatura está ativa.", type="payment")
    elif flavor == "dependent":
        dependent = (await session.execute(select(Dependent).where(Dependent.id == target_id))).scalar()
        if not dependent:
            return False
        dependent.subscription_status = "active"
        dependent.subscription_expiry = add_years(now, config.SUBSCRIPTION_YEARS)
        dependent.activated_at = now
        dependent.payment_reference = payment["id"]
        notify(session, dependent.client_id, "Dependente ativado", f"O dependente {dependent.name} foi ativado.", type="payment")
    elif flavor == "professional":
        if not (await session.execute(select(User.id).where(User.id == target_id))).first():
            return False
        notify(session, target_id, "Pagamento recebido", "Seu repasse ao convênio foi confirmado.", type="payment")
    elif flavor == "agenda":
        if not (await session.execute(select(User.id).where(User.id == target_id))).first():
            return False
        await access.extend_scheduling_access(session, target_id, extra or config.AGENDA_ACCESS_DAYS)
        notify(session, target_id, "Acesso à agenda liberado", "Seu pagamento foi aprovado e sua agenda está liberada.", type="payment")
    return True


async def _find_row(session: AsyncSession, model, payment_id: str, reference: str):
    """The row already tied to this gateway payment, else the newest unpaid row of the reference."""
    row = (await session.execute(
        select(model).where(model.gateway_payment_id == payment_id).limit(1)
    )).scalar()
    if row is None:
        row = (await session.execute(
            select(model)
            .where(model.external_reference == reference, model.status != "paid")
            .order_by(model.id.desc())
            .limit(1)
        )).scalar()
    return row


async def _new_row(session: AsyncSession, model, payer_column: str, flavor: str, target_id: int, extra,
                   reference: str, amount):
    # A reference can be paid more than once; each gateway payment gets its own row
    intent = (await session.execute(
        select(model).where(model.external_reference == reference).order_by(model.id.desc()).limit(1)
    )).scalar()
    row = model(
        amount=to_money(amount or (intent.amount if intent else 0)),
        status="pending",
        external_reference=reference,
        gateway_preference_id=intent.gateway_preference_id if intent else None,
        **{payer_column: target_id},
    )
    if flavor == "agenda":
        row.duration_days = extra
    session.add(row)
    await session.flush()
    return row


async def _settle(session: AsyncSession, model, row, payment_id: str, amount) -> bool:
    """Marks ``row`` paid unless a concurrent delivery got there first."""
    values = {"status": "paid", "gateway_payment_id": payment_id, "processed_at": utc_now()}
    if amount:
        values["amount"] = to_money(amount)
    try:
        result = await session.execute(
            update(model)
            .where(model.id == row.id, model.status != "paid")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
    except IntegrityError:
        return False
    return result.rowcount == 1


async def _record_coupon(session: AsyncSession, flavor: str, target_id: int, coupon_id: int, payment_id: str):
    user_id = target_id
    if flavor == "dependent":
        user_id = (await session.execute(select(Dependent.client_id).where(Dependent.id == target_id))).scalar()
    coupons.record_usage(session, coupon_id, user_id, payment_id)
    await session.flush()


async def process_webhook(session: AsyncSession, gateway, notification: dict) -> dict:
    kind = notification.get("type") or notification.get("topic")
    payment_id = (notification.get("data") or {}).get("id") or notification.get("id")
    if kind != "payment" or not payment_id:
        return {"status": "ignored"}
    payment_id = str(payment_id)

    payment = await gateway.fetch_payment(payment_id)
    if await _already_paid(session, payment_id):
        logger.info("Payment %s already processed", payment_id)
        return {"status": "already_processed"}

    reference = payment.get("external_reference")
    try:
        flavor, target_id, extra = parse_external_reference(reference)
    except ValidationFailed:
        logger.warning("Payment %s has unknown external reference %r", payment_id, reference)
        return {"status": "ignored"}

    model, payer_column = FLAVOR_MODELS[flavor]
    row = await _find_row(session, model, payment_id, reference)
    status = payment.get("status")
    logger.info("Webhook payment %s status=%s reference=%s", payment_id, status, reference)

    if status != "approved":
        if row and row.status != "paid":
            row.status = "failed" if status in FAILED_STATUSES else "pending"
            row.gateway_payment_id = payment_id
            await session.flush()
        return {"status": row.status if row else "ignored"}

    if not await _apply_approval(session, flavor, target_id, extra, payment):
        logger.warning("Payment %s targets missing %s %s", payment_id, flavor, target_id)
        return {"status": "ignored"}

    if row is None:
        row = await _new_row(session, model, payer_column, flavor, target_id, extra, reference, payment.get("amount"))
    if not await _settle(session, model, row, payment_id, payment.get("amount")):
        # Another delivery of the same payment committed first
        await session.rollback()
        logger.info("Payment %s settled by a concurrent delivery", payment_id)
        return {"status": "already_processed"}
    if getattr(row, "coupon_id", None):
        await _record_coupon(session, flavor, target_id, row.coupon_id, payment_id)
    return {"status": "paid", "flavor": flavor, "target_id": target_id}


async def payment_history(session: AsyncSession, user_id: int):
    history = []
    dependent_ids = select(Dependent.id).where(Dependent.client_id == user_id)
    queries = (
        ("subscription", select(ClientPayment).where(ClientPayment.user_id == user_id)),
        ("dependent", select(DependentPayment).where(DependentPayment.dependent_id.in_(dependent_ids))),
        ("professional", select(ProfessionalPayment).where(ProfessionalPayment.professional_id == user_id)),
        ("agenda", select(AgendaPayment).where(AgendaPayment.professional_id == user_id)),
    )
    for flavor, q in queries:
        for row in (await session.execute(q)).scalars().all():
            history.append(serialize_payment(row, flavor))
    history.sort(key=lambda p: (p["created_at"] or "", p["id"]), reverse=True)
    return history


def serialize_payment(row, flavor: str) -> dict:
    return {
        "id": row.id,
        "flavor": flavor,
        "amount": float(row.amount) if row.amount is not None else None,
        "status": row.status,
        "external_reference": row.external_reference,
        "gateway_preference_id": row.gateway_preference_id,
        "gateway_payment_id": row.gateway_payment_id,
        "processed_at": row.processed_at.isoformat() if row.processed_at else None,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }
