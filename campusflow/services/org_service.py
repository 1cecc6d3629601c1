"""Organisation directory: roles, colleges, departments and users.

Writes are admin-only.  Reads are bounded by the caller's ``Scope`` through
``helpers/scoped_queries`` so a dean sees their college, a head or manager
their department and everyone else nothing (fail closed).
"""

import logging

from sqlalchemy import func, or_, select

from campusflow.core.exceptions import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from campusflow.models import db
from campusflow.models.org import College, Department, Role, User
from campusflow.services.audit_service import record_audit
from campusflow.services.helpers.scoped_queries import apply_scope, get_in_scope

logger = logging.getLogger(__name__)

DEFAULT_ROLES = [
    ("admin", "Administrator", ["org.manage", "forms.manage", "workflows.manage", "audit.view", "reports.view"]),
    ("dean", "Dean", ["workflows.manage", "audit.view", "reports.view", "requests.approve"]),
    ("head_of_department", "Head of Department",
     ["workflows.manage", "audit.view", "reports.view", "requests.approve"]),
    ("manager", "Manager", ["workflows.manage", "reports.view", "requests.approve"]),
    ("employee", "Employee", ["requests.submit", "requests.approve"]),
    ("student", "Student", ["requests.submit"]),
]


def _require_admin(scope):
    if not scope.unrestricted:
        raise UnauthorizedError("Only administrators manage the organisation directory")


def _required_name(data, field="name"):
    name = (data.get(field) or "").strip()
    if not name:
        raise ValidationError(f"{field} is required", details={field: "required"})
    return name


def _existing(model, pk, label):
    if pk is None:
        return None
    obj = db.session.get(model, pk)
    if obj is None:
        raise ValidationError(f"{label} {pk} does not exist", details={f"{label.lower()}_id": "unknown"})
    return obj


# ═════════════════════════════════════════════════════════════════════════════
# Roles
# ═════════════════════════════════════════════════════════════════════════════


def seed_default_roles() -> int:
    """Create missing default roles; returns how many were added."""
    existing = set(db.session.execute(select(Role.name)).scalars())
    added = 0
    for name, display_name, permissions in DEFAULT_ROLES:
        if name in existing:
            continue
        db.session.add(Role(name=name, display_name=display_name, permissions=permissions))
        added += 1
    db.session.flush()
    return added


def list_roles():
    return db.session.execute(select(Role).order_by(Role.name)).scalars().all()


# ═════════════════════════════════════════════════════════════════════════════
# Colleges
# ═════════════════════════════════════════════════════════════════════════════


def list_colleges(scope):
    stmt = select(College)
    if not scope.unrestricted:
        visible = apply_scope(
            select(Department.college_id), scope,
            department_col=Department.id, college_col=Department.college_id,
        )
        stmt = stmt.where(College.id.in_(visible))
    return db.session.execute(stmt.order_by(College.name)).scalars().all()


def create_college(actor, scope, data) -> College:
    _require_admin(scope)
    college = College(name=_required_name(data))
    dean = _existing(User, data.get("dean_id"), "Dean")
    college.dean_id = dean.id if dean else None
    db.session.add(college)
    db.session.flush()
    record_audit(actor.id, "create", "college", college.id, {"name": college.name, "dean_id": college.dean_id})
    db.session.commit()
    return college


def update_college(actor, scope, college_id, data) -> College:
    _require_admin(scope)
    college = db.session.get(College, college_id)
    if college is None:
        raise NotFoundError("College", college_id)
    if "name" in data:
        college.name = _required_name(data)
    if "dean_id" in data:
        dean = _existing(User, data.get("dean_id"), "Dean")
        college.dean_id = dean.id if dean else None
    record_audit(actor.id, "update", "college", college.id, {"name": college.name, "dean_id": college.dean_id})
    db.session.commit()
    return college


def delete_college(actor, scope, college_id):
    _require_admin(scope)
    college = db.session.get(College, college_id)
    if college is None:
        raise NotFoundError("College", college_id)
    departments = db.session.execute(
        select(func.count(Department.id)).where(Department.college_id == college.id)
    ).scalar()
    if departments:
        raise ConflictError(
            "College", "departments", departments,
            message=f"College has {departments} department(s); move or delete them first",
        )
    db.session.delete(college)
    record_audit(actor.id, "delete", "college", college_id, {"name": college.name})
    db.session.commit()
    logger.info("College %s deleted", college_id, extra={"actor_id": actor.id, "event_type": "college.delete"})


# ═════════════════════════════════════════════════════════════════════════════
# Departments
# ═════════════════════════════════════════════════════════════════════════════


def list_departments(scope, college_id=None):
    stmt = apply_scope(
        select(Department), scope,
        department_col=Department.id, college_col=Department.college_id,
    )
    if college_id is not None:
        stmt = stmt.where(Department.college_id == college_id)
    return db.session.execute(stmt.order_by(Department.name)).scalars().all()


def create_department(actor, scope, data) -> Department:
    _require_admin(scope)
    department = Department(name=_required_name(data))
    college = _existing(College, data.get("college_id"), "College")
    manager = _existing(User, data.get("manager_id"), "Manager")
    department.college_id = college.id if college else None
    department.manager_id = manager.id if manager else None
    db.session.add(department)
    db.session.flush()
    record_audit(actor.id, "create", "department", department.id, {
        "name": department.name, "college_id": department.college_id,
    })
    db.session.commit()
    return department


def update_department(actor, scope, department_id, data) -> Department:
    _require_admin(scope)
    department = db.session.get(Department, department_id)
    if department is None:
        raise NotFoundError("Department", department_id)
    if "name" in data:
        department.name = _required_name(data)
    if "college_id" in data:
        college = _existing(College, data.get("college_id"), "College")
        department.college_id = college.id if college else None
    if "manager_id" in data:
        manager = _existing(User, data.get("manager_id"), "Manager")
        department.manager_id = manager.id if manager else None
    record_audit(actor.id, "update", "department", department.id, {
        "name": department.name, "college_id": department.college_id, "manager_id": department.manager_id,
    })
    db.session.commit()
    return department


# ═════════════════════════════════════════════════════════════════════════════
# Users
# ═════════════════════════════════════════════════════════════════════════════


def list_users(scope, *, role=None, department_id=None, q=None, active_only=False,
               page=1, per_page=50):
    """Scoped roster; ``role``, ``department_id`` and ``q`` only narrow it."""
    stmt = apply_scope(select(User), scope, department_col=User.department_id)
    if role:
        stmt = stmt.join(Role, Role.id == User.role_id).where(func.lower(Role.name) == role.lower())
    if department_id is not None:
        stmt = stmt.where(User.department_id == department_id)
    if q:
        like = f"%{q.strip()}%"
        stmt = stmt.where(or_(
            User.full_name.ilike(like), User.university_id.ilike(like), User.email.ilike(like),
        ))
    if active_only:
        stmt = stmt.where(User.is_active.is_(True))

    total = db.session.execute(select(func.count()).select_from(stmt.subquery())).scalar()
    rows = db.session.execute(
        stmt.order_by(User.full_name, User.id).limit(per_page).offset((page - 1) * per_page)
    ).scalars().all()
    return rows, total


def get_user_in_scope(scope, user_id) -> User:
    return get_in_scope(User, user_id, scope, department_col=User.department_id)


def _apply_user_fields(user, data, creating):
    if creating or "university_id" in data:
        university_id = _required_name(data, "university_id")
        clash = db.session.execute(
            select(User.id).where(User.university_id == university_id, User.id != (user.id or 0))
        ).first()
        if clash is not None:
            raise ConflictError("User", "university_id", university_id)
        user.university_id = university_id
    if creating or "full_name" in data:
        user.full_name = _required_name(data, "full_name")
    if creating or "role_id" in data:
        if data.get("role_id") is None:
            raise ValidationError("role_id is required", details={"role_id": "required"})
        user.role_id = _existing(Role, data.get("role_id"), "Role").id
    if "department_id" in data:
        department = _existing(Department, data.get("department_id"), "Department")
        user.department_id = department.id if department else None
    for field in ("email", "phone"):
        if field in data:
            setattr(user, field, (data.get(field) or "").strip() or None)
    if "is_active" in data:
        user.is_active = bool(data["is_active"])


def create_user(actor, scope, data) -> User:
    _require_admin(scope)
    user = User(is_active=True)
    _apply_user_fields(user, data, creating=True)
    db.session.add(user)
    db.session.flush()
    record_audit(actor.id, "create", "user", user.id, {"university_id": user.university_id, "role_id": user.role_id})
    db.session.commit()
    logger.info("User %s created", user.university_id, extra={"actor_id": actor.id, "event_type": "user.create"})
    return user


def update_user(actor, scope, user_id, data) -> User:
    _require_admin(scope)
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    _apply_user_fields(user, data, creating=False)
    record_audit(actor.id, "update", "user", user.id, {
        k: data[k] for k in ("university_id", "full_name", "role_id", "department_id", "is_active") if k in data
    })
    db.session.commit()
    return user


def deactivate_user(actor, scope, user_id) -> User:
    _require_admin(scope)
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    if user.id == actor.id:
        raise ValidationError("You cannot deactivate your own account", details={"user_id": "self"})
    user.is_active = False
    record_audit(actor.id, "update", "user", user.id, {"is_active": False})
    db.session.commit()
    logger.info("User %s deactivated", user.university_id,
                extra={"actor_id": actor.id, "event_type": "user.deactivate"})
    return user


# ═════════════════════════════════════════════════════════════════════════════
# Approver pickers
# ═════════════════════════════════════════════════════════════════════════════


def eligible_approvers(scope) -> dict:
    """Roles plus the active users the caller may bind to a workflow step."""
    users = db.session.execute(
        apply_scope(select(User), scope, department_col=User.department_id)
        .where(User.is_active.is_(True))
        .order_by(User.full_name)
    ).scalars().all()
    return {
        "roles": [r.to_dict() for r in list_roles()],
        "users": [u.to_dict() for u in users],
    }


def colleagues(user):
    """Active members of the user's home department, excluding the user."""
    if user.department_id is None:
        return []
    return db.session.execute(
        select(User)
        .where(
            User.department_id == user.department_id,
            User.id != user.id,
            User.is_active.is_(True),
        )
        .order_by(User.full_name)
    ).scalars().all()
