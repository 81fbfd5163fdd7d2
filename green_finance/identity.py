"""
Identity Module

Principals, roles and the identity-provider contract the managers rely on.
Privileged operations take the acting principal explicitly and check its
role before any persistence call.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .errors import AuthorizationError


class Role(IntEnum):
    """User roles as stored in users_account.role"""
    ADMIN = 1
    EDITOR = 2
    STANDARD_USER = 3

    @property
    def label(self) -> str:
        return {
            Role.ADMIN: "Admin",
            Role.EDITOR: "Editor",
            Role.STANDARD_USER: "User",
        }[self]


@dataclass(frozen=True)
class Principal:
    """The authenticated identity performing an action"""
    id: str
    email: str
    role: Role
    confirmed: bool = False

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class IdentityProvider(ABC):
    """Source of the acting principal for a request"""

    @abstractmethod
    def current_principal(self) -> Optional[Principal]:
        """The signed-in principal, or None for anonymous callers"""
        pass

    def is_email_confirmed(self, principal: Principal) -> bool:
        """Whether the principal has verified their email address"""
        return principal.confirmed


class StaticIdentityProvider(IdentityProvider):
    """Identity provider returning a fixed principal (scripts and tests)"""

    def __init__(self, principal: Optional[Principal] = None):
        self.principal = principal

    def current_principal(self) -> Optional[Principal]:
        return self.principal


def require_admin(principal: Optional[Principal], action: str) -> Principal:
    """
    Fail fast unless the principal holds the Admin role

    Raises:
        AuthorizationError: For anonymous or non-admin principals
    """
    if principal is None:
        raise AuthorizationError(f"Authentication required to {action}")
    if not principal.is_admin:
        raise AuthorizationError(f"Admin role required to {action}")
    return principal


def require_self_or_admin(principal: Optional[Principal], user_id: str, action: str) -> Principal:
    """Allow a principal to act on their own account, or an admin on any"""
    if principal is None:
        raise AuthorizationError(f"Authentication required to {action}")
    if principal.id != user_id and not principal.is_admin:
        raise AuthorizationError(f"Not allowed to {action} for another user")
    return principal
