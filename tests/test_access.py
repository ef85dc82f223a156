"""
Tests for role and module scope access control
"""

import pytest

from rahnu_core.access import (
    AccessGuard, Caller, ModuleScope, Role, STAFF_ROLES, is_authorized, visible_branch
)
from rahnu_core.exceptions import AccessDeniedError


TELLER_B1 = Caller(user_id="T1", role=Role.TELLER, scope=ModuleScope.RAHNU, branch_id="B1")
MANAGER_B1 = Caller(user_id="M1", role=Role.MANAGER, scope=ModuleScope.RAHNU, branch_id="B1")
BSE_TELLER = Caller(user_id="T2", role=Role.TELLER, scope=ModuleScope.BSE, branch_id="B1")
ADMIN = Caller(user_id="A1", role=Role.ADMIN, scope=ModuleScope.ADMIN)
CUSTOMER = Caller(user_id="C1", role=Role.CUSTOMER, scope=ModuleScope.RAHNU, branch_id="B1")
ADMIN_SCOPED_TELLER = Caller(user_id="T3", role=Role.TELLER, scope=ModuleScope.ADMIN, branch_id="B2")


class TestIsAuthorized:
    """Pure authorization predicate"""

    def test_role_membership(self):
        assert is_authorized(TELLER_B1, STAFF_ROLES, [ModuleScope.RAHNU])
        assert not is_authorized(CUSTOMER, STAFF_ROLES, [ModuleScope.RAHNU])

    def test_scope_membership(self):
        assert not is_authorized(BSE_TELLER, STAFF_ROLES, [ModuleScope.RAHNU])
        assert is_authorized(BSE_TELLER, STAFF_ROLES, [ModuleScope.RAHNU, ModuleScope.BSE])

    def test_admin_scope_bypasses_scope_check(self):
        assert is_authorized(ADMIN_SCOPED_TELLER, STAFF_ROLES, [ModuleScope.RAHNU])

    def test_branch_restriction(self):
        assert is_authorized(TELLER_B1, STAFF_ROLES, [ModuleScope.RAHNU], branch_id="B1")
        assert not is_authorized(TELLER_B1, STAFF_ROLES, [ModuleScope.RAHNU], branch_id="B2")

    def test_admin_scope_does_not_bypass_branch(self):
        assert not is_authorized(ADMIN_SCOPED_TELLER, STAFF_ROLES, [ModuleScope.RAHNU], branch_id="B1")

    def test_admin_role_bypasses_branch(self):
        assert is_authorized(ADMIN, STAFF_ROLES, [ModuleScope.RAHNU], branch_id="B9")

    def test_caller_without_branch(self):
        caller = Caller(user_id="T4", role=Role.TELLER, scope=ModuleScope.RAHNU)
        assert is_authorized(caller, STAFF_ROLES, [ModuleScope.RAHNU])
        assert not is_authorized(caller, STAFF_ROLES, [ModuleScope.RAHNU], branch_id="B1")

    def test_visible_branch(self):
        assert visible_branch(ADMIN) is None
        assert visible_branch(TELLER_B1) == "B1"


class TestAccessGuard:
    """Guard raises with the user-facing messages"""

    def setup_method(self):
        self.guard = AccessGuard()

    def test_require_staff_allows(self):
        assert self.guard.require_staff(TELLER_B1, ModuleScope.RAHNU, "B1") is TELLER_B1

    def test_customer_denied(self):
        with pytest.raises(AccessDeniedError) as exc:
            self.guard.require_staff(CUSTOMER, ModuleScope.RAHNU)
        assert exc.value.status_code == 403
        assert "role" in exc.value.message

    def test_wrong_scope_denied(self):
        with pytest.raises(AccessDeniedError) as exc:
            self.guard.require_staff(BSE_TELLER, ModuleScope.RAHNU)
        assert "rahnu module access" in exc.value.message

    def test_other_branch_denied(self):
        with pytest.raises(AccessDeniedError) as exc:
            self.guard.require_staff(TELLER_B1, ModuleScope.RAHNU, "B2")
        assert "assigned branch" in exc.value.message

    def test_require_manager(self):
        assert self.guard.require_manager(MANAGER_B1, ModuleScope.RAHNU) is MANAGER_B1
        assert self.guard.require_manager(ADMIN, ModuleScope.BSE) is ADMIN
        with pytest.raises(AccessDeniedError):
            self.guard.require_manager(TELLER_B1, ModuleScope.RAHNU)

    def test_multiple_scopes(self):
        scopes = (ModuleScope.RAHNU, ModuleScope.BSE)
        assert self.guard.require_staff(BSE_TELLER, scopes) is BSE_TELLER
        with pytest.raises(AccessDeniedError) as exc:
            self.guard.require_staff(
                Caller(user_id="X", role=Role.TELLER, scope=ModuleScope.BSE), [ModuleScope.RAHNU]
            )
        assert "rahnu" in exc.value.message
