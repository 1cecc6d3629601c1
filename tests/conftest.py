"""
Shared pytest fixtures for the Campus Request Routing test suite.

Provides:
    - app: Flask application (session-scoped), uploads in a temp folder
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - org: roles, two colleges, three departments and one user per role
    - make_form: factory for an active form bound to a workflow
    - headers: ``X-User-Id`` header builder
"""

from types import SimpleNamespace

import pytest

import campusflow as _app_module
from campusflow import create_app
from campusflow.models import db as _db
from campusflow.models.org import College, Department, Role, User
from campusflow.models.workflow import (
    FormTemplate,
    RequestType,
    RoleBinding,
    UserBinding,
    Workflow,
    WorkflowStep,
)

# Tables are dropped and recreated per test on one in-memory connection.
_app_module._SQLITE_FK_ENFORCEMENT = False


DEFAULT_SCHEMA = [
    {"name": "reason", "label": "Reason", "type": "text", "required": True},
    {"name": "days", "label": "Days", "type": "number", "required": False},
    {"name": "kind", "label": "Kind", "type": "select", "required": False,
     "options": ["annual", "sick"]},
]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app(tmp_path_factory):
    """Create the Flask application once per test session."""
    application = create_app("testing")
    application.config["UPLOAD_FOLDER"] = str(tmp_path_factory.mktemp("uploads"))
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def headers():
    def _headers(user):
        return {"X-User-Id": user.university_id}
    return _headers


# ── Organisation ─────────────────────────────────────────────────────────


def _user(university_id, full_name, role, department=None):
    user = User(
        university_id=university_id,
        full_name=full_name,
        email=f"{university_id.lower()}@campus.test",
        role_id=role.id,
        department_id=department.id if department else None,
        is_active=True,
    )
    _db.session.add(user)
    return user


@pytest.fixture()
def org():
    """
    Engineering college (Computer Science, Electrical) and Arts college
    (History).  The dean has no home department and is found through
    ``College.dean_id``.
    """
    roles = {}
    for name in ("admin", "dean", "head_of_department", "manager", "employee", "student"):
        roles[name] = Role(name=name, display_name=name.replace("_", " ").title())
        _db.session.add(roles[name])
    _db.session.flush()

    engineering = College(name="Engineering")
    arts = College(name="Arts")
    _db.session.add_all([engineering, arts])
    _db.session.flush()

    cs = Department(name="Computer Science", college_id=engineering.id)
    ee = Department(name="Electrical", college_id=engineering.id)
    history = Department(name="History", college_id=arts.id)
    _db.session.add_all([cs, ee, history])
    _db.session.flush()

    ns = SimpleNamespace(
        roles=SimpleNamespace(**roles),
        engineering=engineering, arts=arts, cs=cs, ee=ee, history=history,
        admin=_user("ADM-1", "Ada Admin", roles["admin"]),
        dean=_user("DEAN-1", "Dana Dean", roles["dean"]),
        head_cs=_user("HOD-CS", "Hugo Head", roles["head_of_department"], cs),
        manager_ee=_user("MGR-EE", "Mia Manager", roles["manager"], ee),
        supervisor=_user("EMP-CS-1", "Sam Supervisor", roles["employee"], cs),
        colleague=_user("EMP-CS-2", "Cleo Colleague", roles["employee"], cs),
        staff_history=_user("EMP-HI-1", "Hal Historian", roles["employee"], history),
        student=_user("STU-CS-1", "Stella Student", roles["student"], cs),
        student_arts=_user("STU-HI-1", "Arlo Arts", roles["student"], history),
    )
    _db.session.flush()
    engineering.dean_id = ns.dean.id
    cs.manager_id = ns.head_cs.id
    _db.session.commit()
    return ns


@pytest.fixture()
def make_form():
    """Factory: active form bound (through a RequestType) to a new workflow.

    ``steps`` is a list of ``RoleBinding`` / ``UserBinding`` values or
    ``(binding, sla_hours)`` pairs; an empty list leaves the form unbound.
    """
    def _make(steps, *, name="Leave request", audience=None, schema=None,
              document_template=None, active=True):
        request_type = RequestType(key=f"rt-{name.lower().replace(' ', '-')}", label=name)
        _db.session.add(request_type)
        if steps:
            workflow = Workflow(name=f"{name} approval", is_active=True)
            _db.session.add(workflow)
            _db.session.flush()
            for position, entry in enumerate(steps, start=1):
                binding, sla_hours = entry if isinstance(entry, tuple) else (entry, None)
                step = WorkflowStep(
                    workflow_id=workflow.id,
                    name=f"Step {position}",
                    order=position,
                    sla_hours=sla_hours,
                    is_final=position == len(steps),
                )
                step.binding = binding
                _db.session.add(step)
            _db.session.flush()
            request_type.workflow_id = workflow.id
        _db.session.flush()

        form = FormTemplate(
            name=name,
            schema=list(schema if schema is not None else DEFAULT_SCHEMA),
            audience_config=audience,
            request_type_id=request_type.id,
            document_template=document_template,
            is_active=active,
        )
        _db.session.add(form)
        _db.session.commit()
        return form
    return _make


@pytest.fixture()
def leave_form(org, make_form):
    """Two steps: any head of department, then the dean in person."""
    return make_form([RoleBinding(org.roles.head_of_department.id), UserBinding(org.dean.id)])
