import json
import logging
import random
import sqlite3
from typing import Any, Dict, List, Optional

from config import settings
from database import transaction, use_connection, use_transaction
from exceptions import (
    ConflictError,
    ForbiddenError,
    GenerationFailedError,
    NotFoundError,
    ValidationError,
)
from library import Library
from membership import OPEN_STATUSES, Membership, MembershipStatus, MembershipType
from user import User
from utils.dates import add_months, parse_datetime, to_iso
from utils.validators import TextValidator

logger = logging.getLogger(__name__)

DEFAULT_MEMBERSHIP_TYPES: List[Dict[str, Any]] = [
    {
        "name": "standard",
        "description": "Basic membership with standard benefits",
        "fee": 50,
        "max_books": 3,
        "benefits": ["Access to library resources", "Borrow up to 3 books", "Online catalog access"],
    },
    {
        "name": "premium",
        "description": "Enhanced membership with additional benefits",
        "fee": 100,
        "max_books": 5,
        "benefits": ["Access to all library resources", "Borrow up to 5 books", "Priority reservations"],
    },
    {
        "name": "student",
        "description": "Reduced-fee membership for enrolled students",
        "fee": 20,
        "max_books": 2,
        "benefits": ["Access to library resources", "Borrow up to 2 books"],
    },
]

# Processing outcomes an admin may choose for a pending application
_DECISIONS = {
    MembershipStatus.ACTIVE.value: "Membership approved",
    MembershipStatus.REJECTED.value: "Membership rejected",
}

_MEMBERSHIP_COLUMNS = (
    "id, membership_number, user_id, type, status, start_date, valid_until, notes, "
    "processed_by, created_at, updated_at"
)


def _append_note(existing: Optional[str], note: str) -> str:
    return f"{existing}\n{note}" if existing else note


class MembershipService:
    """Membership applications, their processing and the borrowing eligibility rule."""

    def __init__(self, library: Library) -> None:
        self.library = library
        self._init_membership_types()

    def _init_membership_types(self) -> None:
        """Seed the default membership types when the table is empty."""
        with transaction() as conn:
            if conn.execute("SELECT COUNT(*) FROM membership_types").fetchone()[0]:
                return
            conn.executemany(
                "INSERT INTO membership_types (name, description, fee, benefits, max_books) VALUES (?, ?, ?, ?, ?)",
                [
                    (t["name"], t["description"], t["fee"], json.dumps(t["benefits"]), t["max_books"])
                    for t in DEFAULT_MEMBERSHIP_TYPES
                ],
            )
        logger.info("Seeded %d default membership types", len(DEFAULT_MEMBERSHIP_TYPES))

    # ------------------------- Membership types ------------------------- #
    def list_membership_types(self, include_inactive: bool = False) -> List[MembershipType]:
        query = "SELECT * FROM membership_types"
        if not include_inactive:
            query += " WHERE active = 1"
        with use_connection() as c:
            rows = c.execute(query + " ORDER BY max_books, name").fetchall()
        return [MembershipType.from_dict(dict(row)) for row in rows]

    def find_membership_type(self, name: str, conn: Optional[sqlite3.Connection] = None) -> Optional[MembershipType]:
        with use_connection(conn) as c:
            row = c.execute(
                "SELECT * FROM membership_types WHERE name = ? AND active = 1", (name.strip(),)
            ).fetchone()
        return MembershipType.from_dict(dict(row)) if row else None

    def create_membership_type(self, admin: User, name: str, max_books: int, description: str = "",
                               fee: float = 0.0, benefits: Optional[List[str]] = None) -> MembershipType:
        if not admin.is_admin:
            raise ForbiddenError("Access denied. Admin privileges required.")
        membership_type = MembershipType(name=name, max_books=max_books, description=description,
                                         fee=fee, benefits=benefits)
        if not membership_type.name:
            raise ValidationError("Membership type name is required.")
        if membership_type.max_books < 0:
            raise ValidationError("max_books cannot be negative.")
        if membership_type.fee < 0:
            raise ValidationError("fee cannot be negative.")
        try:
            with transaction() as conn:
                cursor = conn.execute(
                    "INSERT INTO membership_types (name, description, fee, benefits, max_books) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (membership_type.name, membership_type.description, membership_type.fee,
                     json.dumps(membership_type.benefits), membership_type.max_books),
                )
                membership_type.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ConflictError(f"Membership type '{membership_type.name}' already exists.") from e
        return membership_type

    def max_books_for(self, membership: Membership, conn: Optional[sqlite3.Connection] = None) -> int:
        """Concurrent borrowing limit for a membership's type."""
        membership_type = self.find_membership_type(membership.type, conn)
        if membership_type is None:
            return settings.default_max_books
        return membership_type.max_books

    # ------------------------- Membership numbers ------------------------- #
    def _candidate_number(self) -> str:
        year = self.library.now().strftime("%y")
        return f"{settings.membership_number_prefix}{year}{random.randint(0, 9999):04d}"

    def generate_membership_number(self, conn: Optional[sqlite3.Connection] = None,
                                   exclude: Optional[set] = None) -> str:
        """Pick a membership number not yet present in the store.

        Gives up with GenerationFailedError after
        ``settings.membership_number_max_attempts`` collisions.
        """
        exclude = exclude or set()
        with use_connection(conn) as c:
            for _ in range(settings.membership_number_max_attempts):
                candidate = self._candidate_number()
                if candidate in exclude:
                    continue
                taken = c.execute(
                    "SELECT 1 FROM memberships WHERE membership_number = ?", (candidate,)
                ).fetchone()
                if not taken:
                    return candidate
        raise GenerationFailedError()

    # ------------------------- Lifecycle ------------------------- #
    def apply_for_membership(self, user: User, membership_type: str, duration_months: Optional[int] = None,
                             notes: Optional[str] = None) -> Membership:
        """Create a pending membership for ``user`` and link it to their account."""
        if user.is_admin:
            raise ForbiddenError("Admins cannot hold memberships.")
        if not membership_type or not membership_type.strip():
            raise ValidationError("Membership type is required.")
        months = settings.default_membership_months if duration_months is None else duration_months
        if not isinstance(months, int) or isinstance(months, bool) or months < 1:
            raise ValidationError("Duration must be a positive number of months.")

        now = self.library.now()
        with transaction() as conn:
            self.library.get_user(user.id, conn)
            self._expire_lapsed(conn, user_id=user.id)
            existing = conn.execute(
                "SELECT status FROM memberships WHERE user_id = ? AND status IN (?, ?)",
                (user.id, *[s.value for s in OPEN_STATUSES]),
            ).fetchone()
            if existing:
                raise ConflictError(f"You already have a {existing['status']} membership.")

            resolved = self.find_membership_type(membership_type, conn)
            if resolved is None:
                # Unknown types are kept verbatim and borrow with the default limit
                type_name = membership_type.strip()
                logger.warning("Membership type %r is not defined; storing it as given", type_name)
            else:
                type_name = resolved.name

            membership = Membership(
                membership_number="",
                user_id=user.id,
                type=type_name,
                status=MembershipStatus.PENDING,
                start_date=now,
                valid_until=add_months(now, months),
                notes=TextValidator.sanitize_text(notes) or None,
                created_at=now,
                updated_at=now,
            )
            membership.id = self._insert_with_unique_number(conn, membership)
            conn.execute("UPDATE users SET membership_id = ? WHERE id = ?", (membership.id, user.id))

        user.membership_id = membership.id
        logger.info("User %s applied for %s membership %s", user.id, type_name, membership.membership_number)
        return membership

    def _insert_with_unique_number(self, conn: sqlite3.Connection, membership: Membership) -> int:
        # The UNIQUE constraint is the final arbiter; a number taken between the
        # lookup and the insert is retried within the same attempt budget.
        tried: set = set()
        for _ in range(settings.membership_number_max_attempts):
            membership.membership_number = self.generate_membership_number(conn, exclude=tried)
            try:
                cursor = conn.execute(
                    "INSERT INTO memberships (membership_number, user_id, type, status, start_date, valid_until, "
                    "notes, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (membership.membership_number, membership.user_id, membership.type, membership.status.value,
                     to_iso(membership.start_date), to_iso(membership.valid_until), membership.notes,
                     to_iso(membership.created_at), to_iso(membership.updated_at)),
                )
                return cursor.lastrowid
            except sqlite3.IntegrityError as e:
                if "membership_number" not in str(e):
                    raise
                logger.warning("Membership number %s collided on insert; retrying", membership.membership_number)
                tried.add(membership.membership_number)
        raise GenerationFailedError()

    def process_membership_application(self, admin: User, membership_id: int, new_status: str,
                                       notes: Optional[str] = None) -> Membership:
        """Approve (``active``) or reject (``rejected``) a pending application."""
        if not admin.is_admin:
            raise ForbiddenError("Access denied. Admin privileges required.")
        with transaction() as conn:
            membership = self._get(conn, membership_id)
            decision = (new_status or "").strip().lower()
            if decision not in _DECISIONS:
                raise ValidationError("Status must be 'active' or 'rejected'.")
            if membership.status is not MembershipStatus.PENDING:
                raise ConflictError(f"Membership application is already {membership.status.value}.")

            note = TextValidator.sanitize_text(notes) or _DECISIONS[decision]
            membership.status = MembershipStatus(decision)
            membership.notes = _append_note(membership.notes, note)
            membership.processed_by = admin.id
            membership.updated_at = self.library.now()
            conn.execute(
                "UPDATE memberships SET status = ?, notes = ?, processed_by = ?, updated_at = ? WHERE id = ?",
                (membership.status.value, membership.notes, admin.id, to_iso(membership.updated_at), membership_id),
            )
        logger.info("Admin %s set membership %s to %s", admin.id, membership_id, decision)
        return membership

    def cancel_membership(self, actor: User, membership_id: int, notes: Optional[str] = None) -> Membership:
        with transaction() as conn:
            membership = self._get(conn, membership_id)
            if not actor.is_admin and actor.id != membership.user_id:
                raise ForbiddenError("Not authorized to cancel this membership")
            self._expire_lapsed(conn, membership_id=membership_id)
            membership = self._get(conn, membership_id)
            if membership.status is not MembershipStatus.ACTIVE:
                raise ConflictError(f"Only active memberships can be cancelled (current: {membership.status.value}).")
            membership.status = MembershipStatus.CANCELLED
            membership.notes = _append_note(membership.notes, TextValidator.sanitize_text(notes) or "Membership cancelled")
            membership.updated_at = self.library.now()
            conn.execute(
                "UPDATE memberships SET status = ?, notes = ?, updated_at = ? WHERE id = ?",
                (membership.status.value, membership.notes, to_iso(membership.updated_at), membership_id),
            )
        logger.info("Membership %s cancelled by user %s", membership_id, actor.id)
        return membership

    def update_membership(self, admin: User, membership_id: int, *, type: Optional[str] = None,
                          status: Optional[str] = None, start_date=None, valid_until=None,
                          notes: Optional[str] = None) -> Membership:
        """Administrative edit: change tier, dates or status.

        Covers renewal and extension (a new ``valid_until``, optionally with
        ``status='active'``). A membership left active or pending must be the
        user's only open one, and becomes the one linked to their account.
        """
        if not admin.is_admin:
            raise ForbiddenError("Access denied. Admin privileges required.")

        new_status: Optional[MembershipStatus] = None
        if status is not None:
            try:
                new_status = MembershipStatus(str(status).strip().lower())
            except ValueError as e:
                raise ValidationError(f"Unknown membership status: {status}") from e
        try:
            new_start = parse_datetime(start_date)
            new_end = parse_datetime(valid_until)
        except (TypeError, ValueError) as e:
            raise ValidationError("Dates must be ISO-8601 datetimes") from e

        now = self.library.now()
        with transaction() as conn:
            self._expire_lapsed(conn, user_id=self._get(conn, membership_id).user_id)
            membership = self._get(conn, membership_id)

            if type is not None:
                resolved = self.find_membership_type(type, conn)
                if resolved is None:
                    raise ValidationError(f"Unknown membership type: {type}")
                membership.type = resolved.name
            if new_start is not None:
                membership.start_date = new_start
            if new_end is not None:
                membership.valid_until = new_end
            if new_status is not None:
                membership.status = new_status

            if membership.start_date and membership.valid_until <= membership.start_date:
                raise ValidationError("valid_until must be after start_date")
            if membership.status is MembershipStatus.ACTIVE and membership.valid_until < now:
                raise ValidationError("An active membership needs a valid_until in the future")

            if membership.status in OPEN_STATUSES:
                other = conn.execute(
                    "SELECT id FROM memberships WHERE user_id = ? AND id != ? AND status IN (?, ?)",
                    (membership.user_id, membership_id, *[s.value for s in OPEN_STATUSES]),
                ).fetchone()
                if other:
                    raise ConflictError("User already has another active or pending membership.")

            if notes:
                membership.notes = _append_note(membership.notes, TextValidator.sanitize_text(notes))
            membership.processed_by = admin.id
            membership.updated_at = now
            conn.execute(
                "UPDATE memberships SET type = ?, status = ?, start_date = ?, valid_until = ?, notes = ?, "
                "processed_by = ?, updated_at = ? WHERE id = ?",
                (membership.type, membership.status.value, to_iso(membership.start_date),
                 to_iso(membership.valid_until), membership.notes, admin.id, to_iso(now), membership_id),
            )
            if membership.status in OPEN_STATUSES:
                conn.execute("UPDATE users SET membership_id = ? WHERE id = ?", (membership_id, membership.user_id))

        logger.info("Admin %s updated membership %s (status %s, valid until %s)",
                    admin.id, membership_id, membership.status.value, to_iso(membership.valid_until))
        return membership

    # ------------------------- Reads ------------------------- #
    def _expire_lapsed(self, conn: sqlite3.Connection, *, user_id: Optional[int] = None,
                       membership_id: Optional[int] = None) -> int:
        """Apply the active -> expired transition to memberships past their end date."""
        now = to_iso(self.library.now())
        query = "UPDATE memberships SET status = 'expired', updated_at = ? WHERE status = 'active' AND valid_until < ?"
        params: list = [now, now]
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        if membership_id is not None:
            query += " AND id = ?"
            params.append(membership_id)
        expired = conn.execute(query, params).rowcount
        if expired:
            logger.info("Expired %d lapsed membership(s)", expired)
        return expired

    def _get(self, conn: sqlite3.Connection, membership_id: int) -> Membership:
        row = conn.execute(f"SELECT {_MEMBERSHIP_COLUMNS} FROM memberships WHERE id = ?", (membership_id,)).fetchone()
        if not row:
            raise NotFoundError("Membership not found")
        return Membership.from_dict(dict(row))

    def get_membership(self, membership_id: int) -> Membership:
        with transaction() as conn:
            self._expire_lapsed(conn, membership_id=membership_id)
            return self._get(conn, membership_id)

    def get_user_membership(self, user: User, conn: Optional[sqlite3.Connection] = None) -> Optional[Membership]:
        """The membership currently linked to ``user``'s account, if any."""
        with use_transaction(conn) as c:
            self._expire_lapsed(c, user_id=user.id)
            row = c.execute(
                "SELECT m.* FROM memberships m JOIN users u ON u.membership_id = m.id WHERE u.id = ?",
                (user.id,),
            ).fetchone()
        return Membership.from_dict(dict(row)) if row else None

    def list_memberships(self, status: Optional[str] = None, user_id: Optional[int] = None) -> List[Membership]:
        query = f"SELECT {_MEMBERSHIP_COLUMNS} FROM memberships WHERE 1 = 1"
        params: list = []
        if status:
            try:
                params.append(MembershipStatus(status.strip().lower()).value)
            except ValueError as e:
                raise ValidationError(f"Unknown membership status: {status}") from e
            query += " AND status = ?"
        if user_id is not None:
            query += " AND user_id = ?"
            params.append(user_id)
        with transaction() as conn:
            self._expire_lapsed(conn)
            rows = conn.execute(query + " ORDER BY created_at DESC, id DESC", params).fetchall()
        return [Membership.from_dict(dict(row)) for row in rows]

    def list_pending_applications(self) -> List[Membership]:
        return self.list_memberships(status=MembershipStatus.PENDING.value)

    # ------------------------- Eligibility ------------------------- #
    def require_borrowing_membership(self, user: User, conn: Optional[sqlite3.Connection] = None) -> Membership:
        """Return the user's usable membership or raise ForbiddenError."""
        membership = self.get_user_membership(user, conn)
        if membership is None or not membership.is_valid_at(self.library.now()):
            raise ForbiddenError("Active membership required to borrow books")
        return membership

    def is_eligible_to_borrow(self, user: User) -> bool:
        """True iff the user has an active membership that has not run out."""
        membership = self.get_user_membership(user)
        return membership is not None and membership.is_valid_at(self.library.now())
