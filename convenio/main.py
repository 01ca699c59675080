import asyncio
import logging
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from convenio.core import config
from convenio.core.errors import ConvenioError, Internal
from convenio.api.routers import (
    admin, affiliates, appointments, auth, catalog, consultations, coupons, medical,
    notifications, patients, payments, reports, users,
)

logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Convênio Saúde")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ConvenioError)
async def convenio_error_handler(request: Request, exc: ConvenioError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in e.get("loc", ()) if p != "body"), "message": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"message": "Dados inválidos", "code": "VALIDATION_FAILED", "errors": errors},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content=Internal().to_dict())


@app.on_event("startup")
async def startup():
    from convenio.core.init_db import init_db as initialize
    await initialize()
    if config.EXPIRATION_CHECK_INTERVAL > 0:
        from convenio.services.subscriptions import expiration_loop
        app.state.expiration_task = asyncio.create_task(expiration_loop(config.EXPIRATION_CHECK_INTERVAL))


@app.on_event("shutdown")
async def shutdown():
    task = getattr(app.state, "expiration_task", None)
    if task:
        task.cancel()


# Root
@app.get("/api/health")
async def health():
    return {"status": "ok", "environment": config.ENVIRONMENT}


# Include Routers
app.include_router(auth.router)
app.include_router(users.router)
app.include_router(catalog.router)
app.include_router(patients.router)
app.include_router(consultations.router)
app.include_router(appointments.router)
app.include_router(medical.router)
app.include_router(affiliates.router)
app.include_router(affiliates.dashboard_router)
app.include_router(coupons.router)
app.include_router(payments.router)
app.include_router(admin.router)
app.include_router(reports.router)
app.include_router(notifications.router)
