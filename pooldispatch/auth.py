"""Caller identity passed from the HTTP layer into the services."""

from dataclasses import dataclass

from .models import Role


@dataclass(frozen=True)
class Actor:
    """Who is calling, inside which organization."""
    org_id: int
    user_id: str
    role: Role

    @classmethod
    def of(cls, org_id: int, user_id: str, role: str) -> "Actor":
        return cls(org_id=int(org_id), user_id=str(user_id), role=Role(role.lower()))
