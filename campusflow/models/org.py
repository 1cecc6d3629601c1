"""
Organisation models: roles, colleges, departments and users.

The hierarchy is College → Department → User.  A college may designate a dean
user who is not a member of any of its departments; a department may designate
a manager.  Both back-references to ``users`` are declared with
``use_alter=True`` to break the users ↔ departments FK cycle.
"""

from datetime import datetime, timezone

from campusflow.models import db


# ── Role names ───────────────────────────────────────────────────────────────

ROLE_ADMIN = "admin"
ROLE_DEAN = "dean"

# Roles whose list-view scope is their home department.
DEPARTMENT_SCOPED_ROLES = frozenset({"head_of_department", "head", "manager"})

# Coarse audience categories (see services/audience.py).
STUDENT_ROLE_MARKERS = ("student",)
EMPLOYEE_ROLE_MARKERS = ("employee", "staff", "faculty")
STAFF_ROLES = frozenset({ROLE_ADMIN, ROLE_DEAN}) | DEPARTMENT_SCOPED_ROLES


# ═══════════════════════════════════════════════════════════════
# 1. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    display_name = db.Column(db.String(200))
    permissions = db.Column(db.JSON, default=list, comment="Default permission codenames")
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    users = db.relationship("User", back_populates="role", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name or self.name,
            "permissions": list(self.permissions or []),
        }

    def __repr__(self):
        return f"<Role {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 2. COLLEGES
# ═══════════════════════════════════════════════════════════════
class College(db.Model):
    __tablename__ = "colleges"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    dean_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_colleges_dean_id"),
        nullable=True,
        index=True,
        comment="Designated dean; need not belong to one of the college's departments",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    dean = db.relationship("User", foreign_keys=[dean_id])
    departments = db.relationship("Department", back_populates="college", lazy="dynamic")

    def to_dict(self, include_departments=False):
        d = {
            "id": self.id,
            "name": self.name,
            "dean_id": self.dean_id,
            "dean_name": self.dean.full_name if self.dean else None,
        }
        if include_departments:
            d["departments"] = [dep.to_dict() for dep in self.departments.order_by(Department.name)]
        return d

    def __repr__(self):
        return f"<College {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 3. DEPARTMENTS
# ═══════════════════════════════════════════════════════════════
class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    college_id = db.Column(
        db.Integer, db.ForeignKey("colleges.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    manager_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL", use_alter=True, name="fk_departments_manager_id"),
        nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    college = db.relationship("College", back_populates="departments")
    manager = db.relationship("User", foreign_keys=[manager_id])

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "college_id": self.college_id,
            "college_name": self.college.name if self.college else None,
            "manager_id": self.manager_id,
        }

    def __repr__(self):
        return f"<Department {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 4. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    university_id = db.Column(db.String(50), nullable=False, unique=True, index=True)
    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200))
    phone = db.Column(db.String(40))
    role_id = db.Column(db.Integer, db.ForeignKey("roles.id"), nullable=False, index=True)
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    role = db.relationship("Role", back_populates="users")
    department = db.relationship("Department", foreign_keys=[department_id])

    @property
    def role_name(self) -> str:
        return (self.role.name if self.role else "").lower()

    @property
    def college_id(self):
        """College of the home department, if any."""
        if self.department is None:
            return None
        return self.department.college_id

    def to_dict(self):
        return {
            "id": self.id,
            "university_id": self.university_id,
            "full_name": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "role_id": self.role_id,
            "role": self.role_name,
            "department_id": self.department_id,
            "department_name": self.department.name if self.department else None,
            "college_id": self.college_id,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<User {self.id}: {self.university_id}>"
