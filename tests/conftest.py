import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="convenio-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["EXPIRATION_CHECK_INTERVAL"] = "0"
os.environ["ENVIRONMENT"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient
from convenio.core import config
from convenio.core.database import AsyncSessionLocal, Base, engine
from convenio.core.init_db import init_db
from convenio.main import app
from convenio.services import catalog
from convenio.services.billing import get_payment_gateway
from convenio.services.pdf_service import get_document_renderer
from convenio.services.storage import get_image_host
from tests.helpers import FakeGateway, FakeImageHost, FakeRenderer, login, make_user


@pytest.fixture(autouse=True)
async def database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await init_db()
    yield


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
async def client(gateway, renderer):
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_document_renderer] = lambda: renderer
    app.dependency_overrides[get_image_host] = lambda: FakeImageHost()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
async def admin_headers(client):
    return await login(client, config.ADMIN_CPF, "admin", config.ADMIN_PASSWORD)


@pytest.fixture
async def professional(client):
    user = await make_user(["professional"], name="Dra. Ana", percentage=70, phone="11999990000")
    return user, await login(client, user.national_id, "professional")


@pytest.fixture
async def active_client(client):
    user = await make_user(["client"], name="João Cliente", active=True, phone="(11) 98888-7777", city="São Paulo")
    return user, await login(client, user.national_id, "client")


@pytest.fixture
async def service_id():
    async with AsyncSessionLocal() as s:
        rows = await catalog.list_services(s)
    return rows[0][0].id
