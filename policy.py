from dataclasses import dataclass
from enum import Enum

from errors import Forbidden
from models import Role


class Capability(str, Enum):
    read = "read"
    mutate_transactions = "mutate_transactions"
    manage_categories = "manage_categories"
    manage_profile = "manage_profile"


CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.read_only: frozenset({Capability.read, Capability.manage_profile}),
    Role.user: frozenset(
        {Capability.read, Capability.manage_profile, Capability.mutate_transactions}
    ),
    Role.admin: frozenset(Capability),
}


@dataclass(frozen=True)
class Identity:
    id: int
    role: Role


def allows(role: Role, capability: Capability) -> bool:
    return capability in CAPABILITIES.get(role, frozenset())


def authorize(identity: Identity, capability: Capability) -> Identity:
    if not allows(identity.role, capability):
        raise Forbidden(f"Role '{identity.role.value}' may not {capability.value}")
    return identity
