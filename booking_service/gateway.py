"""
Payment gateway adapters.

The gateway is untrusted: a payment counts only after verify_intent() has
fetched the intent server-side and seen it succeed.
"""

import uuid
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal

import httpx

from .errors import PaymentGatewayError

STRIPE_API_BASE = "https://api.stripe.com/v1"

ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}


@dataclass(frozen=True)
class PaymentIntent:
    intent_id: str
    client_secret: str


@dataclass(frozen=True)
class IntentStatus:
    intent_id: str
    succeeded: bool
    status: str
    amount_minor: int | None = None
    currency: str | None = None
    metadata: dict = field(default_factory=dict)


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _status_from_payload(data: dict) -> IntentStatus:
    status = data.get("status") or "unknown"
    return IntentStatus(
        intent_id=data["id"],
        succeeded=status == "succeeded",
        status=status,
        amount_minor=data.get("amount"),
        currency=data.get("currency"),
        metadata=data.get("metadata") or {},
    )


class StripeGateway:
    method_name = "stripe"

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        base_url: str = STRIPE_API_BASE,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        if not api_key:
            raise RuntimeError("STRIPE_SECRET_KEY environment variable is not set")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport
        self.base_url = base_url.rstrip("/")

    async def _request(self, method: str, path: str, data: dict | None = None) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.request(method, url, data=data, headers=headers)
                resp.raise_for_status()
                return resp.json()
        except httpx.TimeoutException:
            raise PaymentGatewayError(f"Timeout calling payment gateway: {path}")
        except httpx.HTTPStatusError as e:
            raise PaymentGatewayError(
                f"Payment gateway returned {e.response.status_code} for {path}"
            )
        except httpx.HTTPError:
            raise PaymentGatewayError(f"Bad gateway calling payment gateway: {path}")

    async def create_intent(self, amount: Decimal, currency: str, metadata: dict) -> PaymentIntent:
        form = {
            "amount": str(to_minor_units(amount, currency)),
            "currency": currency.lower(),
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = str(value)

        data = await self._request("POST", "/payment_intents", form)
        return PaymentIntent(intent_id=data["id"], client_secret=data["client_secret"])

    async def verify_intent(self, intent_id: str) -> IntentStatus:
        data = await self._request("GET", f"/payment_intents/{intent_id}")
        return _status_from_payload(data)


class MockPaymentGateway:
    """
    Development gateway: intents it issued succeed unless declined.

    Never used when ENVIRONMENT=production.
    """

    method_name = "mock"

    def __init__(self):
        self._intents: dict[str, dict] = {}

    async def create_intent(self, amount: Decimal, currency: str, metadata: dict) -> PaymentIntent:
        intent_id = f"mock_pi_{uuid.uuid4().hex[:24]}"
        self._intents[intent_id] = {
            "id": intent_id,
            "status": "succeeded",
            "amount": to_minor_units(amount, currency),
            "currency": currency.lower(),
            "metadata": {k: str(v) for k, v in metadata.items()},
        }
        return PaymentIntent(intent_id=intent_id, client_secret=f"mock_secret_{uuid.uuid4().hex[:24]}")

    def decline(self, intent_id: str):
        self._intents[intent_id]["status"] = "requires_payment_method"

    def intent(self, intent_id: str) -> dict:
        return dict(self._intents[intent_id])

    async def verify_intent(self, intent_id: str) -> IntentStatus:
        data = self._intents.get(intent_id)
        if data is None:
            return IntentStatus(intent_id=intent_id, succeeded=False, status="not_found")
        return _status_from_payload(data)


def build_gateway(kind: str, *, environment: str, stripe_key: str | None, timeout: float):
    if kind == "mock":
        if environment == "production":
            raise RuntimeError("PAYMENT_GATEWAY=mock is not allowed in production")
        return MockPaymentGateway()
    if kind == "stripe":
        return StripeGateway(stripe_key, timeout=timeout)
    raise RuntimeError(f"Unknown PAYMENT_GATEWAY: {kind}")
