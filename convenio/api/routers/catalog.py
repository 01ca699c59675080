from fastapi import APIRouter, Depends
from convenio.api.schemas import CategoryCreate, CategoryUpdate, ServiceCreate, ServiceUpdate
from convenio.core.database import AsyncSessionLocal
from convenio.core.security import CurrentUser, get_current_user, require_roles
from convenio.services import catalog

router = APIRouter(prefix="/api", tags=["Catalog"])


@router.get("/service-categories")
async def list_categories(user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        return [catalog.serialize_category(c) for c in await catalog.list_categories(session)]


@router.post("/service-categories", status_code=201)
async def create_category(body: CategoryCreate, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        category = await catalog.create_category(session, body.name, body.description)
        await session.commit()
        return catalog.serialize_category(category)


@router.put("/service-categories/{category_id}")
async def update_category(category_id: int, body: CategoryUpdate,
                          admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        category = await catalog.update_category(session, category_id, body.model_dump(exclude_unset=True))
        await session.commit()
        return catalog.serialize_category(category)


@router.delete("/service-categories/{category_id}")
async def delete_category(category_id: int, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        await catalog.delete_category(session, category_id)
        await session.commit()
        return {"message": "Categoria excluída com sucesso"}


@router.get("/services")
async def list_services(user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        rows = await catalog.list_services(session)
        return [catalog.serialize_service(s, category_name) for s, category_name in rows]


@router.post("/services", status_code=201)
async def create_service(body: ServiceCreate, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        service = await catalog.create_service(
            session, body.name, body.base_price,
            category_id=body.category_id,
            description=body.description,
            is_base_service=body.is_base_service,
        )
        await session.commit()
        return catalog.serialize_service(service)


@router.put("/services/{service_id}")
async def update_service(service_id: int, body: ServiceUpdate, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        service = await catalog.update_service(session, service_id, body.model_dump(exclude_unset=True))
        await session.commit()
        return catalog.serialize_service(service)


@router.delete("/services/{service_id}")
async def delete_service(service_id: int, admin: CurrentUser = Depends(require_roles("admin"))):
    async with AsyncSessionLocal() as session:
        await catalog.delete_service(session, service_id)
        await session.commit()
        return {"message": "Serviço excluído com sucesso"}
