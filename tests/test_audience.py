"""
Tests: audience targeting of forms.
"""

import pytest

from campusflow.core.exceptions import ValidationError
from campusflow.models.workflow import RoleBinding
from campusflow.services.audience import (
    audience_category,
    available_forms,
    is_form_visible,
    normalize_audience_config,
)
from campusflow.services.scope_resolver import ScopeResolver


def _visible(form, user):
    return is_form_visible(form, ScopeResolver.for_user(user))


@pytest.mark.parametrize("role,expected", [
    ("student", "student"),
    ("graduate_student", "student"),
    ("employee", "employee"),
    ("faculty", "employee"),
    ("head_of_department", "employee"),
    ("dean", "employee"),
    ("guest", None),
])
def test_audience_category(role, expected):
    assert audience_category(role) == expected


class TestVisibility:
    def test_no_config_is_everyone(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Open form")
        assert _visible(form, org.student)
        assert _visible(form, org.staff_history)

    def test_inactive_form_is_invisible(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Draft", active=False)
        assert not _visible(form, org.student)

    def test_college_list_admits_any_department_of_college(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Engineering only",
                         audience={"colleges": [org.engineering.id]})
        assert _visible(form, org.student)
        assert _visible(form, org.manager_ee)
        assert not _visible(form, org.student_arts)

    def test_department_list(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="History only",
                         audience={"departments": [org.history.id]})
        assert _visible(form, org.student_arts)
        assert not _visible(form, org.student)

    def test_flag_false_excludes_category(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Staff only",
                         audience={"student": False, "employee": True})
        assert not _visible(form, org.student)
        assert _visible(form, org.supervisor)

    def test_flag_true_alone_does_not_exclude_others(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Students welcome",
                         audience={"student": True})
        assert _visible(form, org.supervisor)

    def test_college_and_department_must_both_pass(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Mixed",
                         audience={"colleges": [org.engineering.id], "departments": [org.history.id]})
        assert not _visible(form, org.student)
        assert not _visible(form, org.student_arts)

    def test_dean_without_department_uses_resolved_college(self, org, make_form):
        form = make_form([RoleBinding(org.roles.dean.id)], name="Engineering staff",
                         audience={"colleges": [org.engineering.id]})
        assert _visible(form, org.dean)

    def test_available_forms_sorted_and_filtered(self, org, make_form):
        make_form([RoleBinding(org.roles.dean.id)], name="Zeta form")
        make_form([RoleBinding(org.roles.dean.id)], name="Alpha form")
        make_form([RoleBinding(org.roles.dean.id)], name="Arts form",
                  audience={"colleges": [org.arts.id]})
        names = [f.name for f in available_forms(ScopeResolver.for_user(org.student))]
        assert names == ["Alpha form", "Zeta form"]


class TestNormalize:
    def test_none_is_empty(self):
        assert normalize_audience_config(None) == {}

    def test_deduplicates_ids(self):
        assert normalize_audience_config({"colleges": [3, 3, 4], "student": True}) == {
            "student": True, "colleges": [3, 4],
        }

    @pytest.mark.parametrize("config,field", [
        ({"student": "yes"}, "student"),
        ({"colleges": "7"}, "colleges"),
        ({"departments": [0]}, "departments"),
        ({"departments": [True]}, "departments"),
        ({"faculties": [1]}, "faculties"),
    ])
    def test_rejects_bad_shapes(self, config, field):
        with pytest.raises(ValidationError) as exc:
            normalize_audience_config(config)
        assert field in exc.value.details
