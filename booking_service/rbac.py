from dataclasses import dataclass, field

from .errors import ForbiddenError

ADMIN_ROLE = "admin"
CUSTOMER_ROLE = "customer"
PROVIDER_ROLE = "provider"


@dataclass(frozen=True)
class Caller:
    user_id: str
    roles: frozenset = field(default_factory=frozenset)

    @classmethod
    def from_claims(cls, payload: dict) -> "Caller":
        roles = payload.get("roles")
        if not isinstance(roles, list):
            roles = []
        return cls(user_id=str(payload.get("sub") or ""), roles=frozenset(r.lower() for r in roles))

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def require_role(caller: Caller, allowed_roles: list[str]):
    allowed = {r.lower() for r in allowed_roles}
    if caller.roles.isdisjoint(allowed):
        raise ForbiddenError("Access forbidden for this role")


def ensure_participant(booking, caller: Caller):
    """Customer, provider or an administrator may act on a booking."""
    if caller.is_admin:
        return
    if caller.user_id and caller.user_id in (booking.customer_id, booking.provider_id):
        return
    raise ForbiddenError("You are not authorized to access this booking")


def ensure_provider_or_admin(booking, caller: Caller):
    if caller.is_admin or (caller.user_id and caller.user_id == booking.provider_id):
        return
    raise ForbiddenError("Only the provider or an administrator can update this booking")
