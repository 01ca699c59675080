import logging
from decimal import Decimal, InvalidOperation
from typing import Optional
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from convenio.core.errors import DuplicateIdentifier, InUse, NotFound, ServiceNotFound, ValidationFailed
from convenio.models.models import Appointment, Consultation, Service, ServiceCategory, User

logger = logging.getLogger(__name__)


def to_money(value) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationFailed("Valor inválido")
    return amount


async def list_categories(session: AsyncSession):
    res = await session.execute(select(ServiceCategory).order_by(ServiceCategory.name))
    return res.scalars().all()


async def get_category(session: AsyncSession, category_id: int) -> ServiceCategory:
    category = (await session.execute(select(ServiceCategory).where(ServiceCategory.id == category_id))).scalar()
    if not category:
        raise NotFound("Categoria não encontrada")
    return category


async def create_category(session: AsyncSession, name: str, description: Optional[str] = None) -> ServiceCategory:
    name = (name or "").strip()
    if not name:
        raise ValidationFailed("Nome da categoria é obrigatório")
    exists = (await session.execute(select(ServiceCategory.id).where(ServiceCategory.name == name))).first()
    if exists:
        raise DuplicateIdentifier("Categoria já existe")
    category = ServiceCategory(name=name, description=description)
    session.add(category)
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateIdentifier("Categoria já existe")
    return category


async def update_category(session: AsyncSession, category_id: int, changes: dict) -> ServiceCategory:
    category = await get_category(session, category_id)
    if "name" in changes:
        name = (changes["name"] or "").strip()
        if not name:
            raise ValidationFailed("Nome da categoria é obrigatório")
        taken = (await session.execute(
            select(ServiceCategory.id).where(ServiceCategory.name == name, ServiceCategory.id != category.id)
        )).first()
        if taken:
            raise DuplicateIdentifier("Categoria já existe")
        category.name = name
    if "description" in changes:
        category.description = changes["description"]
    try:
        await session.flush()
    except IntegrityError:
        raise DuplicateIdentifier("Categoria já existe")
    return category


async def delete_category(session: AsyncSession, category_id: int):
    category = await get_category(session, category_id)
    for model in (Service, User):
        used = (await session.execute(select(model.id).where(model.category_id == category.id).limit(1))).first()
        if used:
            raise InUse("Categoria possui serviços ou profissionais vinculados")
    await session.delete(category)
    await session.flush()
    logger.info("Category %s deleted", category_id)


def serialize_category(category: ServiceCategory) -> dict:
    return {"id": category.id, "name": category.name, "description": category.description}


async def list_services(session: AsyncSession):
    res = await session.execute(
        select(Service, ServiceCategory.name)
        .outerjoin(ServiceCategory, Service.category_id == ServiceCategory.id)
        .order_by(Service.name)
    )
    return res.all()


async def get_service(session: AsyncSession, service_id: int) -> Service:
    service = (await session.execute(select(Service).where(Service.id == service_id))).scalar()
    if not service:
        raise ServiceNotFound()
    return service


def _check_price(price) -> Decimal:
    amount = to_money(price)
    if amount <= 0:
        raise ValidationFailed("Preço deve ser maior que zero")
    return amount


async def create_service(session: AsyncSession, name: str, base_price, category_id: Optional[int] = None,
                         description: Optional[str] = None, is_base_service: bool = False) -> Service:
    if not (name or "").strip():
        raise ValidationFailed("Nome do serviço é obrigatório")
    if category_id is not None:
        await get_category(session, category_id)
    service = Service(
        name=name.strip(),
        description=description,
        base_price=_check_price(base_price),
        category_id=category_id,
        is_base_service=bool(is_base_service),
    )
    session.add(service)
    await session.flush()
    return service


async def update_service(session: AsyncSession, service_id: int, changes: dict) -> Service:
    service = await get_service(session, service_id)
    if "name" in changes:
        if not (changes["name"] or "").strip():
            raise ValidationFailed("Nome do serviço é obrigatório")
        service.name = changes["name"].strip()
    if "base_price" in changes:
        service.base_price = _check_price(changes["base_price"])
    if "category_id" in changes:
        if changes["category_id"] is not None:
            await get_category(session, changes["category_id"])
        service.category_id = changes["category_id"]
    if "description" in changes:
        service.description = changes["description"]
    if "is_base_service" in changes:
        service.is_base_service = bool(changes["is_base_service"])
    await session.flush()
    return service


async def delete_service(session: AsyncSession, service_id: int):
    service = await get_service(session, service_id)
    for model in (Consultation, Appointment):
        used = (await session.execute(select(model.id).where(model.service_id == service.id).limit(1))).first()
        if used:
            raise InUse("Serviço possui consultas ou agendamentos vinculados")
    await session.delete(service)
    await session.flush()
    logger.info("Service %s deleted", service_id)


def serialize_service(service: Service, category_name: Optional[str] = None) -> dict:
    return {
        "id": service.id,
        "name": service.name,
        "description": service.description,
        "base_price": float(service.base_price),
        "category_id": service.category_id,
        "category_name": category_name,
        "is_base_service": bool(service.is_base_service),
    }
