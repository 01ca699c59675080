import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from convenio.api.schemas import ProfessionalPaymentRequest, SubscriptionPaymentRequest
from convenio.core.database import AsyncSessionLocal
from convenio.core.errors import ConvenioError, Internal
from convenio.core.security import CurrentUser, get_current_user, require_roles
from convenio.services import payments
from convenio.services.billing import get_payment_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Payments"])


@router.post("/payments/create-subscription")
async def create_subscription(body: Optional[SubscriptionPaymentRequest] = None,
                              user: CurrentUser = Depends(require_roles("client")), gateway=Depends(get_payment_gateway)):
    coupon_code = body.coupon_code if body else None
    async with AsyncSessionLocal() as session:
        intent = await payments.create_subscription_intent(session, gateway, user.id, coupon_code)
        await session.commit()
        return intent


@router.post("/payments/dependents/{dependent_id}/create-payment")
async def create_dependent_payment(dependent_id: int, body: Optional[SubscriptionPaymentRequest] = None,
                                   user: CurrentUser = Depends(require_roles("client")),
                                   gateway=Depends(get_payment_gateway)):
    coupon_code = body.coupon_code if body else None
    async with AsyncSessionLocal() as session:
        intent = await payments.create_dependent_intent(session, gateway, user, dependent_id, coupon_code)
        await session.commit()
        return intent


@router.post("/payments/professional/create-payment")
async def create_professional_payment(body: ProfessionalPaymentRequest,
                                      user: CurrentUser = Depends(require_roles("professional")),
                                      gateway=Depends(get_payment_gateway)):
    async with AsyncSessionLocal() as session:
        intent = await payments.create_professional_intent(session, gateway, user.id, body.amount)
        await session.commit()
        return intent


@router.post("/payments/agenda/create-payment")
async def create_agenda_payment(user: CurrentUser = Depends(require_roles("professional")),
                                gateway=Depends(get_payment_gateway)):
    async with AsyncSessionLocal() as session:
        intent = await payments.create_agenda_intent(session, gateway, user.id)
        await session.commit()
        return intent


@router.get("/payments/history")
async def payment_history(user: CurrentUser = Depends(get_current_user)):
    async with AsyncSessionLocal() as session:
        return await payments.payment_history(session, user.id)


@router.post("/webhooks/mercadopago")
async def mercadopago_webhook(request: Request, gateway=Depends(get_payment_gateway)):
    try:
        notification = await request.json()
    except ValueError:
        notification = {}
    if not isinstance(notification, dict):
        notification = {}
    # Query-string notifications (IPN) carry the same fields
    for key in ("type", "topic", "id"):
        if key in request.query_params and key not in notification:
            notification[key] = request.query_params[key]
    if "data.id" in request.query_params and not notification.get("data"):
        notification["data"] = {"id": request.query_params["data.id"]}

    # A non-2xx answer makes the gateway retry the notification
    try:
        async with AsyncSessionLocal() as session:
            result = await payments.process_webhook(session, gateway, notification)
            await session.commit()
    except ConvenioError as e:
        logger.error("Webhook processing failed: %s", e.message)
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    except Exception:
        logger.exception("Unexpected error processing webhook")
        return JSONResponse(status_code=500, content=Internal().to_dict())
    return result
