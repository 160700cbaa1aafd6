"""Payment gateway HTTP client for off-session charges"""

import httpx
from typing import Dict, Optional
from charge_engine.domain.models import GatewayCharge
from charge_engine.domain.exceptions import GatewayError, GatewayTimeoutError
from charge_engine.config import settings
from charge_engine.infrastructure.observability.metrics import gateway_latency_histogram, gateway_failure_counter


class PaymentGatewayClient:
    """Client for a Stripe-compatible payment intents API"""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.gateway_api_base
        self.secret_key = secret_key if secret_key is not None else settings.gateway_secret_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    async def create_charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method: str,
        customer: str,
        metadata: Dict[str, str],
        idempotency_key: str,
        description: str = "",
        receipt_email: Optional[str] = None,
    ) -> GatewayCharge:
        """
        Create and confirm a charge without the customer present.

        Card declines come back as a charge in a non-succeeded status, not an
        exception, so the caller can record a failed payment.

        Raises:
            GatewayTimeoutError: No answer within the timeout; outcome unknown
            GatewayError: Transport failure, HTTP error, or invalid response
        """
        form = {
            "amount": str(amount_cents),
            "currency": currency,
            "payment_method": payment_method,
            "customer": customer,
            "confirm": "true",
            "off_session": "true",
        }
        if description:
            form["description"] = description
        if receipt_email:
            form["receipt_email"] = receipt_email
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)

        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Idempotency-Key": idempotency_key,
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                with gateway_latency_histogram.time():
                    response = await client.post(
                        f"{self.base_url}/v1/payment_intents",
                        data=form,
                        headers=headers,
                    )

                if response.status_code == 402:
                    return self._declined_charge(response.json())

                response.raise_for_status()
                data = response.json()
                return GatewayCharge(id=data["id"], status=data["status"])

            except httpx.TimeoutException as e:
                gateway_failure_counter.labels(kind="timeout").inc()
                raise GatewayTimeoutError(f"Gateway timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                gateway_failure_counter.labels(kind="error").inc()
                raise GatewayError(f"Gateway error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                gateway_failure_counter.labels(kind="error").inc()
                raise GatewayError(f"Gateway unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                gateway_failure_counter.labels(kind="error").inc()
                raise GatewayError(f"Invalid charge data from gateway: {e}") from e

    async def retrieve_charge(self, charge_id: str) -> GatewayCharge:
        """
        Current state of a previously created charge.

        Raises:
            GatewayTimeoutError: No answer within the timeout
            GatewayError: Transport failure, HTTP error, or invalid response
        """
        headers = {"Authorization": f"Bearer {self.secret_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                with gateway_latency_histogram.time():
                    response = await client.get(f"{self.base_url}/v1/payment_intents/{charge_id}", headers=headers)
                response.raise_for_status()
                data = response.json()
                error = data.get("last_payment_error") or {}
                return GatewayCharge(
                    id=data["id"],
                    status=data["status"],
                    failure_reason=error.get("decline_code") or error.get("code") or error.get("message"),
                )

            except httpx.TimeoutException as e:
                gateway_failure_counter.labels(kind="timeout").inc()
                raise GatewayTimeoutError(f"Gateway timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                gateway_failure_counter.labels(kind="error").inc()
                raise GatewayError(f"Gateway error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                gateway_failure_counter.labels(kind="error").inc()
                raise GatewayError(f"Gateway unreachable: {e}") from e
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                gateway_failure_counter.labels(kind="error").inc()
                raise GatewayError(f"Invalid charge data from gateway: {e}") from e

    @staticmethod
    def _declined_charge(body: dict) -> GatewayCharge:
        error = body.get("error") or {}
        intent = error.get("payment_intent") or {}
        reason = error.get("decline_code") or error.get("code") or error.get("message") or "card_declined"
        if not intent.get("id"):
            raise GatewayError(f"Charge declined without a payment intent: {reason}")
        return GatewayCharge(
            id=intent["id"],
            status=intent.get("status", "requires_payment_method"),
            failure_reason=reason,
        )
