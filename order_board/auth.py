from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status


class Role(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    FLORIST = "FLORIST"
    VIEWER = "VIEWER"


@dataclass
class Principal:
    id: int
    username: str
    tenant_id: str
    role: Role
    active: bool


def get_current_principal(request: Request) -> Principal:
    principal = getattr(request.state, "principal", None)
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    return principal


ADMIN_ROLES = (Role.OWNER, Role.ADMIN)


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


def assert_tenant_scope(principal: Principal, tenant_id: str) -> None:
    if principal.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied - tenant mismatch")


def can_edit_cards(principal: Principal) -> bool:
    return principal.role != Role.VIEWER
