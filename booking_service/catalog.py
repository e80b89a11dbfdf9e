from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from .errors import CatalogUnavailableError, NotFoundError

DEFAULT_DURATION_MINUTES = 60


@dataclass(frozen=True)
class ServiceInfo:
    service_id: str
    provider_id: str
    duration_minutes: int
    base_price: Decimal
    name: str | None = None


def service_info_from_payload(service_id: str, data: dict) -> ServiceInfo:
    provider_id = data.get("provider_id") or data.get("providerId")
    if not provider_id:
        raise CatalogUnavailableError(f"Service {service_id} has no provider")

    duration = data.get("duration_minutes") or data.get("durationMinutes") or DEFAULT_DURATION_MINUTES
    price = data.get("base_price") or data.get("basePrice") or 0
    try:
        base_price = Decimal(str(price))
    except InvalidOperation:
        base_price = Decimal("0")

    return ServiceInfo(
        service_id=str(data.get("service_id") or data.get("id") or service_id),
        provider_id=str(provider_id),
        duration_minutes=int(duration),
        base_price=base_price,
        name=data.get("name"),
    )


class ServiceCatalogClient:
    """Read-only view of the service catalog owned by another service."""

    def __init__(self, base_url: str, timeout: float = 3.0, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_service(self, service_id: str) -> ServiceInfo:
        url = f"{self.base_url}/services/{service_id}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                r = await client.get(url)
        except httpx.TimeoutException:
            raise CatalogUnavailableError(f"Timeout calling service catalog: {url}")
        except httpx.HTTPError:
            raise CatalogUnavailableError(f"Bad gateway calling service catalog: {url}")

        if r.status_code == 404:
            raise NotFoundError("service")
        if r.status_code >= 400:
            raise CatalogUnavailableError(f"Service catalog returned {r.status_code}")

        return service_info_from_payload(service_id, r.json())
