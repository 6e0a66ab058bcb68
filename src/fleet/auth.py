from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .errors import UnauthorizedError


class Role(str, Enum):
    REQUESTER = "requester"
    PROVIDER = "provider"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    """A resolved caller. For providers ``actor_id`` is the provider id."""

    actor_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def owns_provider(self, provider_id: Optional[str]) -> bool:
        return self.role is Role.PROVIDER and provider_id is not None and provider_id == self.actor_id


def parse_credential(credential: Optional[str]) -> Actor:
    """Resolve a ``role:actor_id`` credential issued by the identity service."""

    if not credential:
        raise UnauthorizedError("Missing credential")
    role_name, sep, actor_id = credential.strip().partition(":")
    if not sep or not actor_id:
        raise UnauthorizedError("Malformed credential")
    try:
        role = Role(role_name.lower())
    except ValueError:
        raise UnauthorizedError(f"Unknown role '{role_name}'") from None
    return Actor(actor_id=actor_id, role=role)
