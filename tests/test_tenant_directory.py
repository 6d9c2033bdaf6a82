"""
Tests: Tenant Directory — principal resolution and privileged mutations.
"""

import pytest

from conftest import make_tenant, make_user
from jobflow.core.exceptions import NotFoundError, PermissionDenied, ValidationError
from jobflow.models import db
from jobflow.models.auth import User
from jobflow.services import tenant_directory
from jobflow.services.tenant_directory import Principal, resolve_principal


class TestResolvePrincipal:
    def test_known_user(self, tenant_a, manager_a):
        principal = resolve_principal(manager_a.id)
        assert principal.resolved
        assert principal.tenant_id == tenant_a.id
        assert principal.role == "manager"
        assert not principal.is_cross_tenant_admin

    def test_string_subject_is_accepted(self, member_a):
        assert resolve_principal(str(member_a.id)).user_id == member_a.id

    def test_unknown_user_is_unresolved(self):
        principal = resolve_principal(987654)
        assert not principal.resolved
        assert principal.tenant_id is None

    def test_garbage_subject_is_unresolved(self):
        assert not resolve_principal("not-a-number").resolved

    def test_inactive_user_is_unresolved(self, member_a):
        member_a.deactivate()
        db.session.commit()
        assert not resolve_principal(member_a.id).resolved

    def test_cross_tenant_admin_without_tenant(self, admin_user):
        principal = resolve_principal(admin_user.id)
        assert principal.resolved
        assert principal.tenant_id is None
        assert principal.is_cross_tenant_admin

    def test_role_change_visible_on_next_resolution(self, tenant_a, member_a, manager_a):
        assert resolve_principal(member_a.id).role == "member"
        tenant_directory.set_role(resolve_principal(manager_a.id), member_a.id, "manager")
        assert resolve_principal(member_a.id).role == "manager"


class TestSetRole:
    def test_manager_promotes_member_in_own_tenant(self, manager_a, member_a):
        result = tenant_directory.set_role(resolve_principal(manager_a.id), member_a.id, "manager")
        assert result["previous"]["role"] == "member"
        assert db.session.get(User, member_a.id).role == "manager"

    def test_manager_cannot_grant_cross_tenant_admin(self, manager_a, member_a):
        with pytest.raises(PermissionDenied):
            tenant_directory.set_role(resolve_principal(manager_a.id), member_a.id, "cross_tenant_admin")

    def test_manager_cannot_demote_admin_in_own_tenant(self, tenant_a, manager_a):
        housed_admin = make_user(tenant_a, "cross_tenant_admin", email="ops@a.test")
        with pytest.raises(PermissionDenied):
            tenant_directory.set_role(resolve_principal(manager_a.id), housed_admin.id, "member")
        db.session.expire_all()
        assert db.session.get(User, housed_admin.id).role == "cross_tenant_admin"

    def test_manager_cannot_touch_other_tenant(self, manager_a, member_b):
        with pytest.raises(PermissionDenied):
            tenant_directory.set_role(resolve_principal(manager_a.id), member_b.id, "manager")

    def test_member_cannot_change_roles(self, tenant_a, member_a):
        other = make_user(tenant_a, email="other@a.test")
        with pytest.raises(PermissionDenied):
            tenant_directory.set_role(resolve_principal(member_a.id), other.id, "manager")

    def test_admin_moves_user_across_tenants(self, admin_user, member_a, tenant_b):
        tenant_directory.set_role(resolve_principal(admin_user.id), member_a.id, "member",
                                  tenant_id=tenant_b.id)
        assert resolve_principal(member_a.id).tenant_id == tenant_b.id

    def test_manager_cannot_move_user_out_of_tenant(self, manager_a, member_a, tenant_b):
        with pytest.raises(PermissionDenied):
            tenant_directory.set_role(resolve_principal(manager_a.id), member_a.id, "member",
                                      tenant_id=tenant_b.id)

    def test_unknown_role_rejected(self, admin_user, member_a):
        with pytest.raises(ValidationError):
            tenant_directory.set_role(resolve_principal(admin_user.id), member_a.id, "owner")

    def test_unknown_user(self, admin_user):
        with pytest.raises(NotFoundError):
            tenant_directory.set_role(resolve_principal(admin_user.id), 5555, "member")

    def test_unknown_tenant(self, admin_user, member_a):
        with pytest.raises(NotFoundError):
            tenant_directory.set_role(resolve_principal(admin_user.id), member_a.id, "member",
                                      tenant_id=5555)


class TestDeactivateAndEnsure:
    def test_manager_deactivates_member(self, manager_a, member_a):
        result = tenant_directory.deactivate_user(resolve_principal(manager_a.id), member_a.id)
        assert result["is_active"] is False
        assert not resolve_principal(member_a.id).resolved

    def test_manager_cannot_deactivate_admin(self, tenant_a, manager_a, admin_user):
        with pytest.raises(PermissionDenied):
            tenant_directory.deactivate_user(Principal(manager_a.id, tenant_a.id, "manager"), admin_user.id)

    def test_ensure_user_creates_member_once(self, tenant_a):
        first = tenant_directory.ensure_user(tenant_a.id, "New.Person@A.test", full_name="New Person")
        second = tenant_directory.ensure_user(tenant_a.id, "new.person@a.test")
        assert first.id == second.id
        assert first.role == "member"
        assert first.email == "new.person@a.test"

    def test_ensure_user_never_upgrades(self, tenant_a, manager_a):
        user = tenant_directory.ensure_user(tenant_a.id, "manager@a.test")
        assert user.id == manager_a.id
        assert user.role == "manager"

    def test_ensure_user_requires_email_and_tenant(self, tenant_a):
        with pytest.raises(ValidationError):
            tenant_directory.ensure_user(tenant_a.id, "")
        with pytest.raises(NotFoundError):
            tenant_directory.ensure_user(4242, "x@y.test")

    def test_same_email_in_two_tenants(self, tenant_a):
        tenant_c = make_tenant("tenant-c")
        a = tenant_directory.ensure_user(tenant_a.id, "shared@mail.test")
        c = tenant_directory.ensure_user(tenant_c.id, "shared@mail.test")
        assert a.id != c.id
