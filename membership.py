from __future__ import annotations

import json
from datetime import datetime
from enum import Enum

from utils.dates import parse_datetime, to_iso


class MembershipStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    REJECTED = "rejected"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Statuses that block a new application
OPEN_STATUSES = (MembershipStatus.ACTIVE, MembershipStatus.PENDING)


class MembershipType:
    """A membership tier and the number of books it may hold at once."""

    def __init__(self, name: str, max_books: int, description: str = "", fee: float = 0.0,
                 benefits: list | None = None, active: bool = True, id: int | None = None) -> None:
        self.id = id
        self.name = name.strip().lower()
        self.max_books = int(max_books)
        self.description = description
        self.fee = float(fee)
        self.benefits = benefits or []
        self.active = bool(active)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "fee": self.fee,
            "benefits": self.benefits,
            "max_books": self.max_books,
            "active": self.active,
        }

    @staticmethod
    def from_dict(data: dict) -> "MembershipType":
        benefits = data.get("benefits")
        if isinstance(benefits, str):
            try:
                benefits = json.loads(benefits)
            except json.JSONDecodeError:
                benefits = [benefits] if benefits else []
        return MembershipType(
            id=data.get("id"),
            name=data["name"],
            max_books=data["max_books"],
            description=data.get("description") or "",
            fee=data.get("fee") or 0.0,
            benefits=benefits,
            active=data.get("active", True),
        )


class Membership:
    """A user's membership record, from application to expiry."""

    def __init__(self, membership_number: str, user_id: int, type: str, valid_until: datetime,
                 status: MembershipStatus | str = MembershipStatus.PENDING, start_date: datetime | None = None,
                 notes: str | None = None, processed_by: int | None = None, id: int | None = None,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.membership_number = membership_number
        self.user_id = user_id
        self.type = type
        self.status = MembershipStatus(status)
        self.start_date = start_date
        self.valid_until = valid_until
        self.notes = notes
        self.processed_by = processed_by
        self.created_at = created_at
        self.updated_at = updated_at

    def is_valid_at(self, moment: datetime) -> bool:
        return self.status is MembershipStatus.ACTIVE and moment <= self.valid_until

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "membership_number": self.membership_number,
            "user_id": self.user_id,
            "type": self.type,
            "status": self.status.value,
            "start_date": to_iso(self.start_date),
            "valid_until": to_iso(self.valid_until),
            "notes": self.notes,
            "processed_by": self.processed_by,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Membership":
        return Membership(
            id=data.get("id"),
            membership_number=data["membership_number"],
            user_id=data["user_id"],
            type=data["type"],
            status=data.get("status") or MembershipStatus.PENDING,
            start_date=parse_datetime(data.get("start_date")),
            valid_until=parse_datetime(data["valid_until"]),
            notes=data.get("notes"),
            processed_by=data.get("processed_by"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )
