import logging
import math
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from borrowing import Borrowing, BorrowingStatus
from config import settings
from database import transaction, use_connection
from exceptions import (
    AlreadyPaidError,
    AlreadyReturnedError,
    ConflictError,
    ForbiddenError,
    LimitExceededError,
    NotFoundError,
    NothingDueError,
    UnavailableError,
    ValidationError,
)
from library import Library
from membership_service import MembershipService
from user import User
from utils.dates import parse_datetime, to_iso
from utils.validators import TextValidator

logger = logging.getLogger(__name__)

_SELECT_BORROWING = """
    SELECT br.*,
           b.title AS book_title, b.author AS book_author, b.serial_number AS book_serial_number,
           u.name AS user_name, u.email AS user_email,
           p.name AS processed_by_name
    FROM borrowings br
    JOIN books b ON b.id = br.book_id
    JOIN users u ON u.id = br.user_id
    LEFT JOIN users p ON p.id = br.processed_by
"""

_PATCHABLE = {"status", "due_date", "notes", "fine_amount", "fine_paid"}


def calculate_fine(due_date: datetime, returned_at: datetime, fine_per_day: Optional[float] = None) -> float:
    """Fine for a return at ``returned_at``: every started day past the due date costs ``fine_per_day``."""
    if returned_at <= due_date:
        return 0.0
    per_day = settings.fine_per_day if fine_per_day is None else fine_per_day
    days_overdue = math.ceil((returned_at - due_date).total_seconds() / 86400)
    return round(days_overdue * per_day, 2)


def _ensure_owner_or_admin(actor: User, borrowing: Borrowing, message: str) -> None:
    if not actor.is_admin and actor.id != borrowing.user_id:
        raise ForbiddenError(message)


class BorrowingService:
    """Borrow/return state machine over books, memberships and borrowing records.

    Each public operation runs as one store transaction, so the copy counter
    on the book and the borrowing record always change together.
    """

    def __init__(self, library: Library, memberships: MembershipService) -> None:
        self.library = library
        self.memberships = memberships

    # ------------------------- Loading ------------------------- #
    def _load(self, row: sqlite3.Row) -> Borrowing:
        borrowing = Borrowing.from_dict(dict(row))
        borrowing.overdue = borrowing.is_overdue_at(self.library.now())
        return borrowing

    def _get(self, conn: sqlite3.Connection, borrowing_id: int) -> Borrowing:
        row = conn.execute(_SELECT_BORROWING + " WHERE br.id = ?", (borrowing_id,)).fetchone()
        if not row:
            raise NotFoundError("Borrowing record not found")
        return self._load(row)

    def _has_open_borrowing(self, conn: sqlite3.Connection, user_id: int, book_id: int,
                            exclude_id: Optional[int] = None) -> bool:
        query = "SELECT 1 FROM borrowings WHERE user_id = ? AND book_id = ? AND status = ?"
        params: List[Any] = [user_id, book_id, BorrowingStatus.BORROWED.value]
        if exclude_id is not None:
            query += " AND id != ?"
            params.append(exclude_id)
        return conn.execute(query, params).fetchone() is not None

    # ------------------------- Borrow ------------------------- #
    def borrow(self, user: User, book_id: int, due_date: Optional[datetime] = None,
               actor: Optional[User] = None) -> Borrowing:
        """Lend one copy of ``book_id`` to ``user``.

        ``actor`` is the admin processing the loan on the user's behalf; when
        omitted the user is acting for themselves.
        """
        actor = actor or user
        if actor.id != user.id and not actor.is_admin:
            raise ForbiddenError("Only admins can borrow on behalf of another user")

        now = self.library.now()
        with transaction() as conn:
            book = self.library.get_book(book_id, conn)
            if book.available_copies < 1:
                raise UnavailableError("Book is not available for borrowing")

            borrower = self.library.get_user(user.id, conn)
            membership = self.memberships.require_borrowing_membership(borrower, conn)

            max_books = self.memberships.max_books_for(membership, conn)
            open_count = conn.execute(
                "SELECT COUNT(*) FROM borrowings WHERE user_id = ? AND status = ?",
                (borrower.id, BorrowingStatus.BORROWED.value),
            ).fetchone()[0]
            if open_count >= max_books:
                raise LimitExceededError(f"You have reached your borrowing limit of {max_books} books")

            if self._has_open_borrowing(conn, borrower.id, book_id):
                raise ConflictError("You already have this book borrowed")

            if due_date is None:
                due = now + timedelta(days=settings.loan_period_days)
            else:
                try:
                    due = parse_datetime(due_date)
                except (TypeError, ValueError) as e:
                    raise ValidationError("due_date must be an ISO-8601 datetime") from e
                if due <= now:
                    raise ValidationError("Due date must be after the borrow date")

            self.library.take_copy(conn, book_id)
            processed_by = actor.id if actor.is_admin else borrower.id
            cursor = conn.execute(
                "INSERT INTO borrowings (book_id, user_id, borrow_date, due_date, status, processed_by, "
                "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (book_id, borrower.id, to_iso(now), to_iso(due), BorrowingStatus.BORROWED.value,
                 processed_by, to_iso(now), to_iso(now)),
            )
            borrowing = self._get(conn, cursor.lastrowid)

        logger.info("User %s borrowed book %s (borrowing %s, due %s)",
                    borrower.id, book_id, borrowing.id, to_iso(borrowing.due_date))
        return borrowing

    # ------------------------- Return ------------------------- #
    def return_book(self, actor: User, borrowing_id: int) -> Borrowing:
        with transaction() as conn:
            borrowing = self._get(conn, borrowing_id)
            if borrowing.status is BorrowingStatus.RETURNED:
                raise AlreadyReturnedError()
            _ensure_owner_or_admin(actor, borrowing, "Not authorized to return this book")

            returned_at = self.library.now()
            fine = calculate_fine(borrowing.due_date, returned_at)
            conn.execute(
                "UPDATE borrowings SET status = ?, return_date = ?, fine_amount = ?, updated_at = ? WHERE id = ?",
                (BorrowingStatus.RETURNED.value, to_iso(returned_at), fine if fine > 0 else borrowing.fine_amount,
                 to_iso(returned_at), borrowing_id),
            )
            self.library.put_back_copy(conn, borrowing.book_id)
            borrowing = self._get(conn, borrowing_id)

        if fine > 0:
            logger.info("Borrowing %s returned late; fine %.2f", borrowing_id, fine)
        else:
            logger.info("Borrowing %s returned", borrowing_id)
        return borrowing

    # ------------------------- Fines ------------------------- #
    def pay_fine(self, actor: User, borrowing_id: int) -> Borrowing:
        with transaction() as conn:
            borrowing = self._get(conn, borrowing_id)
            if borrowing.fine_amount <= 0:
                raise NothingDueError()
            if borrowing.fine_paid:
                raise AlreadyPaidError()
            _ensure_owner_or_admin(actor, borrowing, "Not authorized to pay this fine")
            conn.execute(
                "UPDATE borrowings SET fine_paid = 1, updated_at = ? WHERE id = ?",
                (to_iso(self.library.now()), borrowing_id),
            )
            borrowing = self._get(conn, borrowing_id)
        logger.info("Fine of %.2f paid for borrowing %s", borrowing.fine_amount, borrowing_id)
        return borrowing

    # ------------------------- Admin override ------------------------- #
    def update_borrowing(self, admin: User, borrowing_id: int, patch: Dict[str, Any]) -> Borrowing:
        """Administrative edit of a borrowing record.

        Closing a record stamps the return date and puts the copy back;
        reopening a returned record takes a copy again and clears the
        return date.
        """
        if not admin.is_admin:
            raise ForbiddenError("Access denied. Admin privileges required.")
        unknown = set(patch) - _PATCHABLE
        if unknown:
            raise ValidationError(f"Unknown fields: {', '.join(sorted(unknown))}")

        target: Optional[BorrowingStatus] = None
        if patch.get("status") is not None:
            try:
                target = BorrowingStatus(str(patch["status"]).strip().lower())
            except ValueError as e:
                raise ValidationError(f"Unknown borrowing status: {patch['status']}") from e
            if target is BorrowingStatus.OVERDUE:
                target = BorrowingStatus.BORROWED

        with transaction() as conn:
            borrowing = self._get(conn, borrowing_id)
            now = self.library.now()
            fields: Dict[str, Any] = {}

            if patch.get("due_date") is not None:
                try:
                    fields["due_date"] = to_iso(parse_datetime(patch["due_date"]))
                except (TypeError, ValueError) as e:
                    raise ValidationError("due_date must be an ISO-8601 datetime") from e
            if "notes" in patch:
                fields["notes"] = TextValidator.sanitize_text(patch["notes"]) or None
            if patch.get("fine_amount") is not None:
                try:
                    amount = float(patch["fine_amount"])
                except (TypeError, ValueError) as e:
                    raise ValidationError("fine_amount must be a number") from e
                if amount < 0:
                    raise ValidationError("fine_amount cannot be negative")
                fields["fine_amount"] = round(amount, 2)
            if patch.get("fine_paid") is not None:
                fields["fine_paid"] = 1 if patch["fine_paid"] else 0

            if target is BorrowingStatus.RETURNED:
                fields["status"] = target.value
                if borrowing.return_date is None:
                    fields["return_date"] = to_iso(now)
                if borrowing.is_open:
                    self.library.put_back_copy(conn, borrowing.book_id)
            elif target is BorrowingStatus.BORROWED:
                fields["status"] = target.value
                if not borrowing.is_open:
                    if self._has_open_borrowing(conn, borrowing.user_id, borrowing.book_id, exclude_id=borrowing_id):
                        raise ConflictError("User already has another open borrowing for this book")
                    self.library.take_copy(conn, borrowing.book_id)
                    fields["return_date"] = None

            fields["updated_at"] = to_iso(now)
            set_clause = ", ".join(f"{field} = ?" for field in fields)
            conn.execute(f"UPDATE borrowings SET {set_clause} WHERE id = ?", [*fields.values(), borrowing_id])
            updated = self._get(conn, borrowing_id)

        logger.info("Admin %s updated borrowing %s: %s", admin.id, borrowing_id, sorted(fields))
        return updated

    # ------------------------- Queries ------------------------- #
    def get_borrowing(self, actor: User, borrowing_id: int) -> Borrowing:
        with use_connection() as conn:
            borrowing = self._get(conn, borrowing_id)
        _ensure_owner_or_admin(actor, borrowing, "Not authorized to view this borrowing")
        return borrowing

    def list_borrowings(self, status: Optional[str] = None, user_id: Optional[int] = None,
                        book_id: Optional[int] = None, overdue: bool = False, page: int = 1,
                        limit: Optional[int] = None) -> Dict[str, Any]:
        """Filtered page of borrowings, newest first.

        ``overdue=True`` (or ``status='overdue'``) selects open records whose
        due date has passed.
        """
        limit = settings.default_page_size if limit is None else limit
        if page < 1:
            raise ValidationError("page must be at least 1")
        if not 1 <= limit <= settings.max_page_size:
            raise ValidationError(f"limit must be between 1 and {settings.max_page_size}")

        where: List[str] = []
        params: List[Any] = []
        if status:
            try:
                wanted = BorrowingStatus(status.strip().lower())
            except ValueError as e:
                raise ValidationError(f"Unknown borrowing status: {status}") from e
            if wanted is BorrowingStatus.OVERDUE:
                overdue = True
            else:
                where.append("br.status = ?")
                params.append(wanted.value)
        if user_id is not None:
            where.append("br.user_id = ?")
            params.append(user_id)
        if book_id is not None:
            where.append("br.book_id = ?")
            params.append(book_id)
        if overdue:
            where.append("br.status = ? AND br.due_date < ?")
            params.extend([BorrowingStatus.BORROWED.value, to_iso(self.library.now())])

        clause = (" WHERE " + " AND ".join(where)) if where else ""
        with use_connection() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM borrowings br{clause}", params).fetchone()[0]
            rows = conn.execute(
                _SELECT_BORROWING + clause + " ORDER BY br.borrow_date DESC, br.id DESC LIMIT ? OFFSET ?",
                [*params, limit, (page - 1) * limit],
            ).fetchall()

        return {
            "borrowings": [self._load(row) for row in rows],
            "total_pages": math.ceil(total / limit),
            "current_page": page,
            "total": total,
        }

    def list_user_borrowings(self, user: User, status: Optional[str] = None) -> List[Borrowing]:
        """A user's own borrowing history, newest first."""
        query = _SELECT_BORROWING + " WHERE br.user_id = ?"
        params: List[Any] = [user.id]
        if status:
            try:
                wanted = BorrowingStatus(status.strip().lower())
            except ValueError as e:
                raise ValidationError(f"Unknown borrowing status: {status}") from e
            if wanted is BorrowingStatus.OVERDUE:
                query += " AND br.status = ? AND br.due_date < ?"
                params.extend([BorrowingStatus.BORROWED.value, to_iso(self.library.now())])
            else:
                query += " AND br.status = ?"
                params.append(wanted.value)
        with use_connection() as conn:
            rows = conn.execute(query + " ORDER BY br.borrow_date DESC, br.id DESC", params).fetchall()
        return [self._load(row) for row in rows]

    def list_overdue(self) -> List[Borrowing]:
        """Every open borrowing past its due date, oldest due date first."""
        with use_connection() as conn:
            rows = conn.execute(
                _SELECT_BORROWING + " WHERE br.status = ? AND br.due_date < ? ORDER BY br.due_date, br.id",
                (BorrowingStatus.BORROWED.value, to_iso(self.library.now())),
            ).fetchall()
        return [self._load(row) for row in rows]

    def projected_fine(self, borrowing: Borrowing) -> float:
        """Fine the borrower would owe if the book came back now."""
        if not borrowing.is_open:
            return borrowing.fine_amount
        return calculate_fine(borrowing.due_date, self.library.now())
