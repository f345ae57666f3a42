from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class User:
    """A registered account.

    The role is a single enumerated field. ``is_admin`` is kept as a
    read-only accessor for clients that still expect the boolean flag.
    """

    def __init__(self, name: str, email: str, role: Role | str = Role.USER, id: int | None = None,
                 membership_id: int | None = None, password_hash: str | None = None,
                 created_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.role = Role(role)
        self.membership_id = membership_id
        self.password_hash = password_hash
        self.created_at = created_at

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} <{self.email}>"

    def to_dict(self) -> dict:
        # password_hash never leaves the process
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "is_admin": self.is_admin,
            "membership_id": self.membership_id,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            role=data.get("role") or Role.USER,
            membership_id=data.get("membership_id"),
            password_hash=data.get("password_hash"),
            created_at=data.get("created_at"),
        )
