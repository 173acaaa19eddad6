"""Role-scoped access checks.

Callers are identified by the signed session cookie; these helpers decide what
an identity may see before any data is read.
"""
from dataclasses import dataclass
from enum import Enum

from errors import AccessDenied, AuthError


class Role(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"


@dataclass(frozen=True)
class Identity:
    user_id: int
    role: Role
    roll_number: str | None = None
    email: str | None = None

    @property
    def is_teacher(self) -> bool:
        return self.role is Role.TEACHER

    @property
    def is_student(self) -> bool:
        return self.role is Role.STUDENT

    def to_session(self) -> dict:
        return {
            "id": self.user_id,
            "role": self.role.value,
            "roll_number": self.roll_number,
            "email": self.email,
        }

    @classmethod
    def from_session(cls, data):
        if not data:
            return None
        try:
            role = Role(data.get("role"))
        except ValueError:
            return None
        roll = data.get("roll_number")
        return cls(
            user_id=data["id"],
            role=role,
            roll_number=str(roll) if roll is not None else None,
            email=data.get("email"),
        )


def require_identity(identity):
    if identity is None:
        raise AuthError()
    return identity


def require_role(identity, role: Role) -> Identity:
    identity = require_identity(identity)
    if identity.role is not role:
        raise AccessDenied("Forbidden for this role")
    return identity


def ensure_can_view_student(identity, roll_number: str) -> Identity:
    # teachers see every student; students only themselves
    identity = require_identity(identity)
    if identity.is_teacher:
        return identity
    if identity.is_student and identity.roll_number == str(roll_number):
        return identity
    raise AccessDenied()


def ensure_owns_session(identity, session_row) -> None:
    if session_row["teacher_user_id"] != identity.user_id:
        raise AccessDenied("Session belongs to another teacher")
