from typing import Iterable, Optional

from pydantic import BaseModel

from errors import Forbidden, Unauthorized
from schemas import Role


class Identity(BaseModel):
    """The authenticated caller, passed explicitly into every operation"""
    user_id: str
    role: Role
    email: str
    name: str = ""


def require_role(identity: Optional[Identity], roles: Iterable[Role]) -> Identity:
    """Return identity when its role is one of roles.

    A missing identity and a wrong role raise the same Forbidden error;
    callers that need a 401 for anonymous requests use require_user first.
    """
    allowed = set(roles)
    if not allowed:
        raise ValueError("roles must not be empty")
    if identity is None or identity.role not in allowed:
        raise Forbidden()
    return identity


def require_user(identity: Optional[Identity]) -> Identity:
    if identity is None:
        raise Unauthorized()
    return identity


def is_admin(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role == Role.ADMIN


def is_delivery(identity: Optional[Identity]) -> bool:
    return identity is not None and identity.role == Role.DELIVERY
