"""
Role and Module Scope Access Control

Closed sets of roles and module scopes, plus a pure authorization predicate.
The guard runs in the calling layer before any custody, loan or pricing
operation; the operations themselves trust its result.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

from .exceptions import AccessDeniedError


class Role(Enum):
    """User roles, lowest to highest"""
    CUSTOMER = "customer"
    TELLER = "teller"
    MANAGER = "manager"
    ADMIN = "admin"


class ModuleScope(Enum):
    """Business module a user account is scoped to"""
    RAHNU = "rahnu"   # Pawn broking
    BSE = "bse"       # Gold savings
    ADMIN = "admin"   # Cross-module administration


STAFF_ROLES = frozenset({Role.TELLER, Role.MANAGER, Role.ADMIN})
MANAGER_ROLES = frozenset({Role.MANAGER, Role.ADMIN})


@dataclass(frozen=True)
class Caller:
    """Authenticated identity making a request"""
    user_id: str
    role: Role
    scope: ModuleScope
    branch_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def is_authorized(
    caller: Caller,
    required_roles: Iterable[Role],
    required_scopes: Iterable[ModuleScope],
    branch_id: Optional[str] = None
) -> bool:
    """
    Decide whether a caller may act.

    The caller's role must be one of required_roles. The admin scope passes any
    scope requirement, and the admin role passes any branch restriction. For
    everyone else a requested branch must be the caller's own branch.
    """
    if caller.role not in set(required_roles):
        return False

    if caller.scope != ModuleScope.ADMIN and caller.scope not in set(required_scopes):
        return False

    if branch_id is not None and caller.role != Role.ADMIN:
        if caller.branch_id is None or caller.branch_id != branch_id:
            return False

    return True


def visible_branch(caller: Caller) -> Optional[str]:
    """Branch filter for listings: admins see every branch, staff their own"""
    return None if caller.is_admin else caller.branch_id


class AccessGuard:
    """Raises AccessDeniedError when is_authorized denies"""

    def require_roles(
        self,
        caller: Caller,
        roles: Iterable[Role],
        scope: Union[ModuleScope, Iterable[ModuleScope]],
        branch: Optional[str] = None
    ) -> Caller:
        roles = frozenset(roles)
        scopes = (scope,) if isinstance(scope, ModuleScope) else tuple(scope)
        if caller.role not in roles:
            raise AccessDeniedError(
                "Insufficient permissions. Your role does not have access to this resource."
            )
        if not is_authorized(caller, roles, scopes, branch):
            if caller.scope != ModuleScope.ADMIN and caller.scope not in scopes:
                names = " or ".join(s.value for s in scopes)
                raise AccessDeniedError(
                    f"Access denied. This resource requires {names} module access."
                )
            raise AccessDeniedError(
                "Access denied. You can only access resources in your assigned branch."
            )
        return caller

    def require_scope(
        self,
        caller: Caller,
        scope: Union[ModuleScope, Iterable[ModuleScope]],
        branch: Optional[str] = None
    ) -> Caller:
        """Any role, customers included, with access to the module scope"""
        return self.require_roles(caller, Role, scope, branch)

    def require_staff(
        self,
        caller: Caller,
        scope: Union[ModuleScope, Iterable[ModuleScope]],
        branch: Optional[str] = None
    ) -> Caller:
        """Teller, manager or admin with access to the module scope and branch"""
        return self.require_roles(caller, STAFF_ROLES, scope, branch)

    def require_manager(
        self,
        caller: Caller,
        scope: Union[ModuleScope, Iterable[ModuleScope]],
        branch: Optional[str] = None
    ) -> Caller:
        """Manager or admin with access to the module scope and branch"""
        return self.require_roles(caller, MANAGER_ROLES, scope, branch)
