"""Identity → organisational scope resolution.

One resolver is the source of truth for "what can this caller see": the
result is a frozen ``Scope`` value passed explicitly to every scoped query
(``services/helpers/scoped_queries.py``) instead of being re-derived per
call site.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from campusflow.core.exceptions import NotFoundError
from campusflow.models import db
from campusflow.models.org import (
    DEPARTMENT_SCOPED_ROLES,
    ROLE_ADMIN,
    ROLE_DEAN,
    College,
    User,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Scope:
    """Resolved authorization boundary for one user.

    ``college_id`` / ``department_id`` always describe the user's placement
    (used by audience targeting).  Whether they also bound list views depends
    on the role: see ``level``.
    """

    user_id: int
    role: str
    role_id: int | None
    college_id: int | None
    department_id: int | None
    unrestricted: bool = False

    @property
    def is_dean(self) -> bool:
        return self.role == ROLE_DEAN

    @property
    def is_department_head(self) -> bool:
        return self.role in DEPARTMENT_SCOPED_ROLES

    @property
    def level(self) -> str | None:
        """``"all"``, ``"college"``, ``"department"`` or None (no list scope)."""
        if self.unrestricted:
            return "all"
        if self.is_dean and self.college_id is not None:
            return "college"
        if self.is_department_head and self.department_id is not None:
            return "department"
        return None

    @property
    def is_resolved(self) -> bool:
        return self.level is not None


class ScopeResolver:
    """Stateless resolver; every method reads the current session."""

    @staticmethod
    def lookup_user(identity) -> User:
        """Find a user by university id, falling back to the numeric PK.

        Raises:
            NotFoundError: no user matches.
        """
        if identity is None or identity == "":
            raise NotFoundError("User", identity)

        user = None
        if not isinstance(identity, int):
            text = str(identity).strip()
            user = db.session.execute(
                select(User).where(User.university_id == text)
            ).scalar_one_or_none()
            if user is None and text.isdigit():
                user = db.session.get(User, int(text))
        else:
            user = db.session.get(User, identity)

        if user is None:
            raise NotFoundError("User", identity)
        return user

    @classmethod
    def resolve(cls, identity) -> Scope:
        """Resolve a university id or user id to its ``Scope``."""
        return cls.for_user(cls.lookup_user(identity))

    @staticmethod
    def for_user(user: User) -> Scope:
        role = user.role_name
        department = user.department
        department_id = department.id if department is not None else None
        college_id = department.college_id if department is not None else None

        if role == ROLE_ADMIN:
            return Scope(
                user_id=user.id,
                role=role,
                role_id=user.role_id,
                college_id=college_id,
                department_id=department_id,
                unrestricted=True,
            )

        if role == ROLE_DEAN and college_id is None:
            # A dean need not belong to one of the college's departments.
            college_id = db.session.execute(
                select(College.id).where(College.dean_id == user.id).order_by(College.id)
            ).scalars().first()
            if college_id is None:
                logger.warning(
                    "Dean %s has no resolvable college; scope stays closed",
                    user.university_id,
                    extra={"actor_id": user.id, "event_type": "scope.unresolved"},
                )

        return Scope(
            user_id=user.id,
            role=role,
            role_id=user.role_id,
            college_id=college_id,
            department_id=department_id,
        )
