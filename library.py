import logging
import random
import sqlite3
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import database
from auth import hash_password, verify_password
from book import Book
from config import settings
from database import initialize_database, transaction, use_connection
from exceptions import (
    ConflictError,
    ForbiddenError,
    GenerationFailedError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from user import Role, User
from utils.dates import to_iso, utcnow
from utils.validators import AccountValidator, CatalogValidator, TextValidator

logger = logging.getLogger(__name__)

_BOOK_COLUMNS = "id, title, author, serial_number, genre, total_copies, available_copies, created_at"
_USER_COLUMNS = "id, name, email, password_hash, role, membership_id, created_at"


class Library:
    """Catalog and account store shared by the membership and borrowing workflows."""

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        # Callers (and tests) may point the module-level helpers in database.py at
        # another file before the schema is created.
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database()
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a pre-constructed Book, generating a serial number when it has none."""
        if not CatalogValidator.validate_title(book.title):
            raise ValidationError("Book title is required.")
        if not CatalogValidator.validate_author(book.author):
            raise ValidationError("Book author is required.")
        if book.total_copies < 0:
            raise ValidationError("Total copies cannot be negative.")
        if not 0 <= book.available_copies <= book.total_copies:
            raise ValidationError("Available copies must be between 0 and total copies.")

        if book.serial_number:
            book.serial_number = CatalogValidator.normalize_serial(book.serial_number)
            if not CatalogValidator.is_valid_serial(book.serial_number):
                raise ValidationError(f"Invalid serial number: {book.serial_number}")
            if self.find_book_by_serial(book.serial_number):
                raise ConflictError(f"Serial number {book.serial_number} already exists.")
        else:
            book.serial_number = self._generate_serial_number()

        try:
            with transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO books (title, author, serial_number, genre, total_copies, available_copies) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (book.title, book.author, book.serial_number, book.genre,
                     book.total_copies, book.available_copies),
                )
                book.id = cursor.lastrowid
                row = conn.execute("SELECT created_at FROM books WHERE id = ?", (book.id,)).fetchone()
                book.created_at = row["created_at"] if row else None
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Serial number {book.serial_number} already exists.") from e
        logger.info("Added book %s (%s)", book.id, book.serial_number)
        return book

    def find_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Book]:
        with use_connection(conn) as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def get_book(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> Book:
        book = self.find_book(book_id, conn)
        if not book:
            raise NotFoundError("Book not found")
        return book

    def find_book_by_serial(self, serial_number: str) -> Optional[Book]:
        serial = CatalogValidator.normalize_serial(serial_number)
        with use_connection() as c:
            row = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books WHERE serial_number = ?", (serial,)).fetchone()
        return Book.from_dict(dict(row)) if row else None

    def list_books(self) -> List[Book]:
        """List all books in the catalog (fresh on every call)."""
        with use_connection() as c:
            rows = c.execute(f"SELECT {_BOOK_COLUMNS} FROM books ORDER BY title, id").fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def search_books(self, query: str) -> List[Book]:
        """Search books by title, author or serial number."""
        pattern = f"%{query.strip()}%"
        with use_connection() as c:
            rows = c.execute(
                f"SELECT {_BOOK_COLUMNS} FROM books "
                "WHERE title LIKE ? OR author LIKE ? OR serial_number LIKE ? ORDER BY title, id",
                (pattern, pattern, pattern),
            ).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def update_book(self, book_id: int, *, title: Optional[str] = None, author: Optional[str] = None,
                    genre: Optional[str] = None, serial_number: Optional[str] = None,
                    total_copies: Optional[int] = None) -> Book:
        """Update catalog fields of a book.

        Changing ``total_copies`` shifts ``available_copies`` by the same delta,
        so copies currently on loan stay accounted for.
        """
        update_fields: Dict[str, Any] = {}
        if title is not None and title.strip():
            update_fields["title"] = title.strip()
        if author is not None and author.strip():
            update_fields["author"] = author.strip()
        if genre is not None:
            update_fields["genre"] = genre.strip() or None
        if serial_number is not None and serial_number.strip():
            serial = CatalogValidator.normalize_serial(serial_number)
            if not CatalogValidator.is_valid_serial(serial):
                raise ValidationError(f"Invalid serial number: {serial}")
            update_fields["serial_number"] = serial

        with transaction() as conn:
            book = self.get_book(book_id, conn)
            if total_copies is not None and total_copies != book.total_copies:
                on_loan = book.total_copies - book.available_copies
                if total_copies < on_loan:
                    raise ValidationError(
                        f"Cannot reduce total copies below the {on_loan} copies currently on loan."
                    )
                update_fields["total_copies"] = total_copies
                update_fields["available_copies"] = total_copies - on_loan

            if not update_fields:
                raise ValidationError("Nothing to update.")

            set_clause = ", ".join(f"{field} = ?" for field in update_fields)
            try:
                conn.execute(f"UPDATE books SET {set_clause} WHERE id = ?", [*update_fields.values(), book_id])
            except sqlite3.IntegrityError as e:
                raise ConflictError(f"Serial number {update_fields.get('serial_number')} already exists.") from e
            return self.get_book(book_id, conn)

    def remove_book(self, book_id: int) -> bool:
        """Delete a book. Books with borrowing history are kept for the audit trail."""
        with transaction() as conn:
            if not self.find_book(book_id, conn):
                return False
            if conn.execute("SELECT 1 FROM borrowings WHERE book_id = ? LIMIT 1", (book_id,)).fetchone():
                raise ConflictError("Book has borrowing records and cannot be deleted.")
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            return cursor.rowcount > 0

    # ------------------------- Copy counters ------------------------- #
    def take_copy(self, conn: sqlite3.Connection, book_id: int) -> None:
        """Decrement available copies inside the caller's transaction.

        The update only matches while a copy is on the shelf, so two requests
        racing for the last copy cannot both succeed.
        """
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies - 1 WHERE id = ? AND available_copies > 0",
            (book_id,),
        )
        if cursor.rowcount == 0:
            if not self.find_book(book_id, conn):
                raise NotFoundError("Book not found")
            raise UnavailableError("Book has no available copies")

    def put_back_copy(self, conn: sqlite3.Connection, book_id: int) -> bool:
        """Increment available copies inside the caller's transaction, never above the total."""
        cursor = conn.execute(
            "UPDATE books SET available_copies = available_copies + 1 "
            "WHERE id = ? AND available_copies < total_copies",
            (book_id,),
        )
        if cursor.rowcount == 0:
            logger.warning("Book %s already has every copy on the shelf; counter left unchanged", book_id)
            return False
        return True

    def _generate_serial_number(self) -> str:
        for _ in range(settings.membership_number_max_attempts):
            candidate = f"{settings.serial_number_prefix}{random.randint(100000, 999999)}"
            if not self.find_book_by_serial(candidate):
                return candidate
        raise GenerationFailedError("Could not generate a unique serial number")

    # ------------------------- Users ------------------------- #
    def register_user(self, name: str, email: str, password: str, role: Role | str = Role.USER) -> User:
        name = TextValidator.sanitize_text(name)
        if not name:
            raise ValidationError("Name is required.")
        if not AccountValidator.is_valid_email(email):
            raise ValidationError("A valid email address is required.")
        if not password or len(password) < settings.min_password_length:
            raise ValidationError(f"Password must be at least {settings.min_password_length} characters.")

        user = User(name=name, email=email, role=role, password_hash=hash_password(password))
        try:
            with transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO users (name, email, password_hash, role) VALUES (?, ?, ?, ?)",
                    (user.name, user.email, user.password_hash, user.role.value),
                )
                user.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError("User with this email already exists") from e
        logger.info("Registered %s user %s", user.role.value, user.id)
        return self.get_user(user.id)

    def authenticate(self, email: str, password: str) -> Optional[User]:
        """Return the user if the email and password match, else None."""
        user = self.find_user_by_email(email)
        if user and user.password_hash and verify_password(user.password_hash, password):
            return user
        return None

    def find_user(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[User]:
        with use_connection(conn) as c:
            row = c.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (user_id,)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def get_user(self, user_id: int, conn: Optional[sqlite3.Connection] = None) -> User:
        user = self.find_user(user_id, conn)
        if not user:
            raise NotFoundError("User not found")
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        with use_connection() as c:
            row = c.execute(f"SELECT {_USER_COLUMNS} FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
        return User.from_dict(dict(row)) if row else None

    def list_users(self) -> List[User]:
        with use_connection() as c:
            rows = c.execute(f"SELECT {_USER_COLUMNS} FROM users ORDER BY id").fetchall()
        return [User.from_dict(dict(row)) for row in rows]

    def update_user(self, actor: User, user_id: int, *, name: Optional[str] = None, email: Optional[str] = None,
                    password: Optional[str] = None, role: Optional[Role | str] = None) -> User:
        """Update a profile. Users may edit themselves; only admins may change roles."""
        if not actor.is_admin and actor.id != user_id:
            raise ForbiddenError("Access denied. You can only update your own profile.")

        update_fields: Dict[str, Any] = {}
        if name is not None and TextValidator.sanitize_text(name):
            update_fields["name"] = TextValidator.sanitize_text(name)
        if email:
            if not AccountValidator.is_valid_email(email):
                raise ValidationError("A valid email address is required.")
            update_fields["email"] = email.strip().lower()
        if password:
            if len(password) < settings.min_password_length:
                raise ValidationError(f"Password must be at least {settings.min_password_length} characters.")
            update_fields["password_hash"] = hash_password(password)
        if role is not None:
            if not actor.is_admin:
                raise ForbiddenError("Only admins can change roles.")
            try:
                update_fields["role"] = Role(role).value
            except ValueError as e:
                raise ValidationError(f"Unknown role: {role}") from e

        with transaction() as conn:
            target = self.get_user(user_id, conn)
            if update_fields.get("role") == Role.ADMIN.value and not target.is_admin:
                # admins cannot hold memberships
                if conn.execute(
                    "SELECT 1 FROM memberships WHERE user_id = ? AND status IN ('active', 'pending')",
                    (user_id,),
                ).fetchone():
                    raise ConflictError("User holds a membership and cannot be made an admin.")
            if not update_fields:
                return target
            set_clause = ", ".join(f"{field} = ?" for field in update_fields)
            try:
                conn.execute(f"UPDATE users SET {set_clause} WHERE id = ?", [*update_fields.values(), user_id])
            except sqlite3.IntegrityError as e:
                raise ConflictError("Email already in use by another user") from e
            return self.get_user(user_id, conn)

    def remove_user(self, actor: User, user_id: int) -> None:
        """Delete a user and their memberships.

        Users referenced by borrowing records are kept: borrowings are the
        audit trail and are never deleted.
        """
        if not actor.is_admin:
            raise ForbiddenError("Access denied. Admin privileges required.")
        if actor.id == user_id:
            raise ConflictError("You cannot delete your own account")
        with transaction() as conn:
            self.get_user(user_id, conn)
            if conn.execute("SELECT 1 FROM borrowings WHERE user_id = ? LIMIT 1", (user_id,)).fetchone():
                raise ConflictError("User has borrowing records and cannot be deleted.")
            conn.execute("UPDATE users SET membership_id = NULL WHERE id = ?", (user_id,))
            conn.execute("DELETE FROM memberships WHERE user_id = ?", (user_id,))
            conn.execute("DELETE FROM users WHERE id = ?", (user_id,))
        logger.info("Removed user %s", user_id)

    # ------------------------- Reporting ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        """Get library statistics."""
        now = to_iso(self.now())
        with use_connection() as c:
            books = c.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_copies), 0), COALESCE(SUM(available_copies), 0) FROM books"
            ).fetchone()
            users = c.execute("SELECT COUNT(*) FROM users").fetchone()[0]
            active = c.execute(
                "SELECT COUNT(*) FROM memberships WHERE status = 'active' AND valid_until >= ?", (now,)
            ).fetchone()[0]
            pending = c.execute("SELECT COUNT(*) FROM memberships WHERE status = 'pending'").fetchone()[0]
            open_loans = c.execute("SELECT COUNT(*) FROM borrowings WHERE status = 'borrowed'").fetchone()[0]
            overdue = c.execute(
                "SELECT COUNT(*) FROM borrowings WHERE status = 'borrowed' AND due_date < ?", (now,)
            ).fetchone()[0]
            unpaid = c.execute(
                "SELECT COALESCE(SUM(fine_amount), 0) FROM borrowings WHERE fine_paid = 0 AND fine_amount > 0"
            ).fetchone()[0]

        return {
            "total_books": books[0],
            "total_copies": books[1],
            "available_copies": books[2],
            "total_users": users,
            "active_memberships": active,
            "pending_applications": pending,
            "open_borrowings": open_loans,
            "overdue_borrowings": overdue,
            "unpaid_fines": round(float(unpaid), 2),
        }

    def close(self) -> None:
        """Compatibility helper for tests: connections are opened per call, so nothing is held."""
        return None
