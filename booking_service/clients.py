"""
HTTP clients for the collaborators the booking core consumes: the provider
directory, the service catalog and the payment gateway.

Every call goes through the collaborator's circuit breaker. Transport errors,
timeouts, error responses and an open breaker all surface as
``ExternalServiceError``.
"""
import logging
from decimal import Decimal

import httpx

from shared.breaker import CircuitBreaker, CircuitBreakerOpen

from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


class ServiceClient:
    def __init__(
        self,
        name: str,
        base_url: str,
        breaker: CircuitBreaker,
        timeout: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker
        self.timeout = timeout
        self.transport = transport

    async def _send(self, method: str, path: str, payload: dict | None, headers: dict | None, params: dict | None):
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        ) as client:
            resp = await client.request(method, path, json=payload, headers=headers, params=params)
            resp.raise_for_status()
            return resp.json() if resp.content else {}

    async def request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        headers: dict | None = None,
        params: dict | None = None,
    ):
        try:
            return await self.breaker.call(self._send, method, path, payload, headers, params)
        except CircuitBreakerOpen as e:
            raise ExternalServiceError(str(e), reason=f"{self.name}_unavailable")
        except httpx.TimeoutException:
            logger.warning("%s timed out on %s %s", self.name, method, path)
            raise ExternalServiceError(f"Timeout calling {self.name}", reason=f"{self.name}_timeout")
        except httpx.HTTPStatusError as e:
            logger.warning("%s answered %s on %s %s", self.name, e.response.status_code, method, path)
            raise ExternalServiceError(
                f"{self.name} responded {e.response.status_code}", reason=f"{self.name}_error"
            )
        except httpx.HTTPError as e:
            logger.warning("%s call failed on %s %s: %s", self.name, method, path, e)
            raise ExternalServiceError(f"Bad gateway calling {self.name}", reason=f"{self.name}_error")


class ProviderDirectoryClient(ServiceClient):
    async def list_providers(self, service_id: str) -> list[dict]:
        data = await self.request("GET", "/providers", params={"service_id": service_id})
        if isinstance(data, dict):
            return data.get("providers") or []
        return data or []


class CatalogClient(ServiceClient):
    async def get_service(self, service_id: str) -> dict:
        """Scheduling rules and category of a service; unknown fields are ignored."""
        return await self.request("GET", f"/services/{service_id}/scheduling-rules") or {}


class PaymentGatewayClient(ServiceClient):
    async def capture(self, amount: Decimal, customer_ref: str | None, idempotency_key: str) -> str:
        data = await self.request(
            "POST",
            "/captures",
            {"amount": str(amount), "customer_ref": customer_ref},
            headers={"Idempotency-Key": idempotency_key},
        )
        reference_id = data.get("reference_id")
        if not reference_id:
            raise ExternalServiceError("capture response missing reference_id", reason="payment_gateway_error")
        return reference_id

    async def refund(self, payment_ref: str, amount: Decimal, reason: str | None, idempotency_key: str) -> str:
        data = await self.request(
            "POST",
            "/refunds",
            {"payment_ref": payment_ref, "amount": str(amount), "reason": reason},
            headers={"Idempotency-Key": idempotency_key},
        )
        refund_id = data.get("refund_id")
        if not refund_id:
            raise ExternalServiceError("refund response missing refund_id", reason="payment_gateway_error")
        return refund_id
