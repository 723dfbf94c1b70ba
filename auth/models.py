"""The authenticated caller of an API request."""

from __future__ import annotations

from dataclasses import dataclass

ADMIN_ROLES = ("owner", "admin")


@dataclass(frozen=True)
class AuthenticatedPrincipal:
    principal_id: str
    workspace_id: str
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES
