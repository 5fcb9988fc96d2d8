"""
Role to capability mapping

Every admin-gated operation goes through ``require_capabilities`` instead of
checking role strings inline.
"""
import enum
from typing import Dict, FrozenSet, Iterable, Union

from .errors import PermissionDeniedError


class Role(str, enum.Enum):
    ADMIN = "admin"
    RESTAURANT = "restaurant"
    CUSTOMER = "customer"


class Capability(str, enum.Enum):
    MANAGE_CAMPAIGNS = "manage_campaigns"
    SEND_CAMPAIGNS = "send_campaigns"
    VIEW_STATISTICS = "view_statistics"
    MANAGE_SUPPRESSION = "manage_suppression"


ROLE_CAPABILITIES: Dict[Role, FrozenSet[Capability]] = {
    Role.ADMIN: frozenset(Capability),
    Role.RESTAURANT: frozenset(),
    Role.CUSTOMER: frozenset(),
}


def parse_role(value: Union[str, Role, None]) -> Role:
    """Normalise a role claim; legacy tokens carry upper-case values"""
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value or "").strip().lower())
    except ValueError:
        raise PermissionDeniedError(f"Unknown role: {value!r}")


def has_capabilities(role: Union[str, Role], required: Iterable[Capability]) -> bool:
    granted = ROLE_CAPABILITIES.get(parse_role(role), frozenset())
    return set(required) <= granted


def require_capabilities(role: Union[str, Role], required: Iterable[Capability]) -> Role:
    """Raise PermissionDeniedError unless ``role`` grants every capability"""
    required = set(required)
    parsed = parse_role(role)
    missing = required - ROLE_CAPABILITIES.get(parsed, frozenset())
    if missing:
        names = ", ".join(sorted(c.value for c in missing))
        raise PermissionDeniedError(f"Role '{parsed.value}' lacks capabilities: {names}")
    return parsed
