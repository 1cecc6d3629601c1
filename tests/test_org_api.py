"""
Tests: organisation directory (roles, colleges, departments, users, pickers).
"""

import pytest
from sqlalchemy import select

from campusflow.core.exceptions import ConflictError, UnauthorizedError, ValidationError
from campusflow.models import db
from campusflow.models.org import Role
from campusflow.services import org_service
from campusflow.services.scope_resolver import ScopeResolver


def _admin(org):
    return org.admin, ScopeResolver.for_user(org.admin)


class TestRoles:
    def test_seed_adds_only_missing(self, org):
        assert org_service.seed_default_roles() == 0

    def test_seed_on_empty_directory(self):
        assert org_service.seed_default_roles() == len(org_service.DEFAULT_ROLES)
        db.session.commit()
        names = list(db.session.execute(select(Role.name)).scalars())
        assert "head_of_department" in names
        assert org_service.seed_default_roles() == 0


class TestColleges:
    def test_scoped_listing(self, org):
        assert [c.name for c in org_service.list_colleges(ScopeResolver.for_user(org.admin))] == [
            "Arts", "Engineering",
        ]
        assert [c.id for c in org_service.list_colleges(ScopeResolver.for_user(org.dean))] == [org.engineering.id]
        assert [c.id for c in org_service.list_colleges(ScopeResolver.for_user(org.head_cs))] == [
            org.engineering.id,
        ]
        assert org_service.list_colleges(ScopeResolver.for_user(org.student)) == []

    def test_create_update_delete(self, org):
        actor, scope = _admin(org)
        college = org_service.create_college(actor, scope, {"name": "Medicine", "dean_id": org.dean.id})
        assert college.dean_id == org.dean.id
        org_service.update_college(actor, scope, college.id, {"dean_id": None})
        assert college.dean_id is None
        org_service.delete_college(actor, scope, college.id)

    def test_delete_with_departments_conflicts(self, org):
        actor, scope = _admin(org)
        with pytest.raises(ConflictError):
            org_service.delete_college(actor, scope, org.arts.id)

    def test_unknown_dean(self, org):
        actor, scope = _admin(org)
        with pytest.raises(ValidationError):
            org_service.create_college(actor, scope, {"name": "Law", "dean_id": 999})

    def test_non_admin_cannot_write(self, org):
        with pytest.raises(UnauthorizedError):
            org_service.create_college(org.dean, ScopeResolver.for_user(org.dean), {"name": "Law"})


class TestDepartments:
    def test_scoped_listing(self, org):
        dean_scope = ScopeResolver.for_user(org.dean)
        assert {d.id for d in org_service.list_departments(dean_scope)} == {org.cs.id, org.ee.id}
        assert [d.id for d in org_service.list_departments(ScopeResolver.for_user(org.head_cs))] == [org.cs.id]
        admin_scope = ScopeResolver.for_user(org.admin)
        assert [d.id for d in org_service.list_departments(admin_scope, org.arts.id)] == [org.history.id]

    def test_create_and_move(self, org):
        actor, scope = _admin(org)
        dep = org_service.create_department(actor, scope, {"name": "Physics", "college_id": org.engineering.id})
        org_service.update_department(actor, scope, dep.id, {"college_id": org.arts.id, "manager_id": org.dean.id})
        assert (dep.college_id, dep.manager_id) == (org.arts.id, org.dean.id)

    def test_name_required(self, org):
        actor, scope = _admin(org)
        with pytest.raises(ValidationError):
            org_service.create_department(actor, scope, {"name": "  "})


class TestUsers:
    def test_head_lists_own_department(self, org):
        rows, total = org_service.list_users(ScopeResolver.for_user(org.head_cs))
        assert total == 4
        assert {u.id for u in rows} == {org.head_cs.id, org.supervisor.id, org.colleague.id, org.student.id}

    def test_filters_narrow(self, org):
        scope = ScopeResolver.for_user(org.dean)
        rows, _ = org_service.list_users(scope, role="student")
        assert [u.id for u in rows] == [org.student.id]
        rows, _ = org_service.list_users(scope, department_id=org.history.id)
        assert rows == []
        rows, _ = org_service.list_users(scope, q="cleo")
        assert [u.id for u in rows] == [org.colleague.id]

    def test_student_sees_nobody(self, org):
        rows, total = org_service.list_users(ScopeResolver.for_user(org.student))
        assert (rows, total) == ([], 0)

    def test_create_and_duplicate(self, org):
        actor, scope = _admin(org)
        user = org_service.create_user(actor, scope, {
            "university_id": "STU-CS-9", "full_name": "New Student",
            "role_id": org.roles.student.id, "department_id": org.cs.id,
        })
        assert user.is_active is True
        with pytest.raises(ConflictError):
            org_service.create_user(actor, scope, {
                "university_id": "STU-CS-9", "full_name": "Twin", "role_id": org.roles.student.id,
            })

    def test_role_required(self, org):
        actor, scope = _admin(org)
        with pytest.raises(ValidationError):
            org_service.create_user(actor, scope, {"university_id": "X-1", "full_name": "No Role"})

    def test_deactivate(self, org):
        actor, scope = _admin(org)
        org_service.deactivate_user(actor, scope, org.colleague.id)
        assert org.colleague.is_active is False
        with pytest.raises(ValidationError):
            org_service.deactivate_user(actor, scope, actor.id)

    def test_colleagues_exclude_self_and_inactive(self, org):
        org.colleague.is_active = False
        db.session.commit()
        assert {u.id for u in org_service.colleagues(org.supervisor)} == {org.head_cs.id, org.student.id}
        assert org_service.colleagues(org.dean) == []


class TestEndpoints:
    def test_me(self, client, headers, org):
        body = client.get("/api/v1/me", headers=headers(org.dean)).get_json()
        assert body["user"]["university_id"] == "DEAN-1"
        assert body["scope"]["level"] == "college"
        assert body["scope"]["college_id"] == org.engineering.id

    def test_user_detail_is_scoped(self, client, headers, org):
        assert client.get(f"/api/v1/users/{org.student.id}", headers=headers(org.head_cs)).status_code == 200
        assert client.get(f"/api/v1/users/{org.student_arts.id}",
                          headers=headers(org.head_cs)).status_code == 404

    def test_user_roster_pagination(self, client, headers, org):
        body = client.get("/api/v1/users?per_page=2&page=2", headers=headers(org.admin)).get_json()
        assert body["total"] == 9
        assert body["pages"] == 5
        assert len(body["users"]) == 2

    def test_bad_department_filter_is_400(self, client, headers, org):
        res = client.get("/api/v1/users?department_id=abc", headers=headers(org.admin))
        assert res.status_code == 400

    def test_admin_writes(self, client, headers, org):
        res = client.post("/api/v1/colleges", headers=headers(org.admin), json={"name": "Law"})
        assert res.status_code == 201
        res = client.post("/api/v1/departments", headers=headers(org.admin),
                          json={"name": "Civil Law", "college_id": res.get_json()["id"]})
        assert res.status_code == 201
        res = client.post("/api/v1/colleges", headers=headers(org.dean), json={"name": "Law 2"})
        assert res.status_code == 403

    def test_duplicate_user_is_409(self, client, headers, org):
        res = client.post("/api/v1/users", headers=headers(org.admin), json={
            "university_id": "STU-CS-1", "full_name": "Copy", "role_id": org.roles.student.id,
        })
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_DUPLICATE"

    def test_approver_picker(self, client, headers, org):
        body = client.get("/api/v1/approvers", headers=headers(org.head_cs)).get_json()
        assert len(body["roles"]) == 6
        assert {u["id"] for u in body["users"]} == {
            org.head_cs.id, org.supervisor.id, org.colleague.id, org.student.id,
        }

    def test_colleagues(self, client, headers, org):
        body = client.get("/api/v1/colleagues", headers=headers(org.student)).get_json()
        assert {u["university_id"] for u in body} == {"HOD-CS", "EMP-CS-1", "EMP-CS-2"}
