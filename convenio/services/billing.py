"""Mercado Pago payment gateway.

The orchestrator in ``payments.py`` only talks to the two coroutines below,
so tests swap the gateway for an in-memory fake.
"""
import logging
from decimal import Decimal
from functools import lru_cache
import mercadopago
from mercadopago.config import RequestOptions
from fastapi.concurrency import run_in_threadpool
from convenio.core import config
from convenio.core.errors import ExternalServiceFailed

logger = logging.getLogger(__name__)


class MercadoPagoGateway:
    def __init__(self, access_token=None, timeout=None):
        self.access_token = access_token or config.MP_ACCESS_TOKEN
        self.request_options = RequestOptions(
            connection_timeout=timeout or config.GATEWAY_TIMEOUT_SECONDS,
            max_retries=0,
        )
        self._sdk = None

    @property
    def sdk(self):
        if not self.access_token:
            raise ExternalServiceFailed("Gateway de pagamento não configurado")
        if self._sdk is None:
            self._sdk = mercadopago.SDK(self.access_token)
        return self._sdk

    async def _call(self, fn, *args):
        try:
            response = await run_in_threadpool(fn, *args, self.request_options)
        except Exception as e:
            logger.error("Mercado Pago request failed: %s", e)
            raise ExternalServiceFailed("Erro ao comunicar com o Mercado Pago") from e
        if response.get("status") not in (200, 201):
            logger.error("Mercado Pago returned %s: %s", response.get("status"), response.get("response"))
            raise ExternalServiceFailed("Erro ao comunicar com o Mercado Pago")
        return response["response"]

    async def create_preference(self, preference: dict) -> dict:
        body = await self._call(self.sdk.preference().create, preference)
        return {"id": body["id"], "init_point_url": body["init_point"]}

    async def fetch_payment(self, payment_id: str) -> dict:
        body = await self._call(self.sdk.payment().get, payment_id)
        return {
            "id": str(body["id"]),
            "status": body.get("status"),
            "amount": Decimal(str(body.get("transaction_amount") or 0)),
            "external_reference": body.get("external_reference"),
        }


@lru_cache()
def get_payment_gateway() -> MercadoPagoGateway:
    return MercadoPagoGateway()
