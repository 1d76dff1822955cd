from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping

from fastapi import Depends, HTTPException, Request, status

USER_ID_HEADER = "x-user-id"
USER_ROLES_HEADER = "x-user-roles"

DEFAULT_ROLES: tuple[str, ...] = ("user",)
ADMIN_ROLE = "admin"


@dataclass(frozen=True, slots=True)
class Identity:
    """Caller identity asserted by the upstream gateway."""

    subject: str | None = None
    roles: tuple[str, ...] = field(default_factory=tuple)

    @property
    def authenticated(self) -> bool:
        return bool(self.subject)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles

    def has_any_role(self, *roles: str) -> bool:
        required = {role.lower() for role in roles if role}
        return not required or bool(required & set(self.roles))


def parse_roles(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    return tuple(segment.strip().lower() for segment in raw.split(",") if segment.strip())


def identity_from_headers(headers: Mapping[str, str]) -> Identity:
    subject = (headers.get(USER_ID_HEADER) or "").strip() or None
    roles = parse_roles(headers.get(USER_ROLES_HEADER))
    if subject and not roles:
        roles = DEFAULT_ROLES
    return Identity(subject=subject, roles=roles)


def get_identity(request: Request) -> Identity:
    return identity_from_headers(request.headers)


def require_roles(*roles: str):
    """Dependency factory: 401 without an identity, 403 when none of ``roles`` is held."""

    def _dependency(identity: Identity = Depends(get_identity)) -> Identity:
        if not identity.authenticated:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        if not identity.has_any_role(*roles):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return identity

    return _dependency


def resolve_user_id(identity: Identity, explicit: str | None, *, default: str = "anonymous") -> str:
    """Act as the caller; only admins may name another user explicitly."""
    if explicit and identity.is_admin:
        return explicit
    return identity.subject or default


__all__ = [
    "ADMIN_ROLE",
    "DEFAULT_ROLES",
    "Identity",
    "USER_ID_HEADER",
    "USER_ROLES_HEADER",
    "get_identity",
    "identity_from_headers",
    "parse_roles",
    "require_roles",
    "resolve_user_id",
]
