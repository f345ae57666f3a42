from __future__ import annotations

from datetime import datetime
from enum import Enum

from utils.dates import parse_datetime, to_iso


class BorrowingStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    # Never stored: a borrowed record past its due date is reported as overdue
    OVERDUE = "overdue"


class Borrowing:
    """One loan of one copy of a book to one user."""

    def __init__(self, book_id: int, user_id: int, borrow_date: datetime, due_date: datetime,
                 processed_by: int, status: BorrowingStatus | str = BorrowingStatus.BORROWED,
                 return_date: datetime | None = None, fine_amount: float = 0.0, fine_paid: bool = False,
                 notes: str | None = None, id: int | None = None, created_at: datetime | None = None,
                 updated_at: datetime | None = None, book: dict | None = None, user: dict | None = None,
                 processed_by_name: str | None = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = BorrowingStatus(status)
        self.fine_amount = float(fine_amount or 0.0)
        self.fine_paid = bool(fine_paid)
        self.notes = notes
        self.processed_by = processed_by
        self.processed_by_name = processed_by_name
        self.created_at = created_at
        self.updated_at = updated_at
        # Joined summaries, filled when loaded through the lifecycle service
        self.book = book
        self.user = user
        self.overdue = False

    @property
    def is_open(self) -> bool:
        return self.status is BorrowingStatus.BORROWED

    def is_overdue_at(self, moment: datetime) -> bool:
        return self.is_open and self.due_date < moment

    def effective_status(self) -> BorrowingStatus:
        return BorrowingStatus.OVERDUE if self.overdue else self.status

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_id": self.book_id,
            "user_id": self.user_id,
            "book": self.book,
            "user": self.user,
            "borrow_date": to_iso(self.borrow_date),
            "due_date": to_iso(self.due_date),
            "return_date": to_iso(self.return_date),
            "status": self.effective_status().value,
            "fine_amount": self.fine_amount,
            "fine_paid": self.fine_paid,
            "notes": self.notes,
            "processed_by": self.processed_by,
            "processed_by_name": self.processed_by_name,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Borrowing":
        book = None
        if data.get("book_title") is not None:
            book = {
                "id": data["book_id"],
                "title": data["book_title"],
                "author": data.get("book_author"),
                "serial_number": data.get("book_serial_number"),
            }
        user = None
        if data.get("user_name") is not None:
            user = {"id": data["user_id"], "name": data["user_name"], "email": data.get("user_email")}
        return Borrowing(
            id=data.get("id"),
            book_id=data["book_id"],
            user_id=data["user_id"],
            borrow_date=parse_datetime(data["borrow_date"]),
            due_date=parse_datetime(data["due_date"]),
            return_date=parse_datetime(data.get("return_date")),
            status=data.get("status") or BorrowingStatus.BORROWED,
            fine_amount=data.get("fine_amount") or 0.0,
            fine_paid=data.get("fine_paid") or False,
            notes=data.get("notes"),
            processed_by=data["processed_by"],
            processed_by_name=data.get("processed_by_name"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
            book=book,
            user=user,
        )
