from datetime import datetime, timedelta, timezone

import pytest

import database
from book import Book
from borrowing_service import BorrowingService
from library import Library
from membership_service import MembershipService
from user import Role

PASSWORD = "Reader#2024"


class FrozenClock:
    """Deterministic clock handed to Library(clock=...)."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta) -> datetime:
        self.current = self.current + timedelta(**delta)
        return self.current

    def set(self, moment: datetime) -> None:
        self.current = moment


@pytest.fixture
def clock():
    return FrozenClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, request, monkeypatch, clock):
    # Her test için benzersiz bir veritabanı dosyası
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    monkeypatch.setattr(database, "DATABASE_FILE", db_file)
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()


@pytest.fixture
def memberships(lib):
    return MembershipService(lib)


@pytest.fixture
def borrowings(lib, memberships):
    return BorrowingService(lib, memberships)


@pytest.fixture
def admin(lib):
    return lib.register_user("Ada Admin", "admin@example.com", "Admin#2024", role=Role.ADMIN)


@pytest.fixture
def reader(lib):
    """A registered user without any membership."""
    return lib.register_user("Rita Reader", "rita@example.com", PASSWORD)


@pytest.fixture
def make_member(lib, memberships, admin):
    """Factory: register a user and give them an approved membership of ``type``."""
    counter = {"n": 0}

    def _make(membership_type: str = "standard", months: int = 12):
        counter["n"] += 1
        user = lib.register_user(f"Member {counter['n']}", f"member{counter['n']}@example.com", PASSWORD)
        membership = memberships.apply_for_membership(user, membership_type, months)
        memberships.process_membership_application(admin, membership.id, "active")
        return user

    return _make


@pytest.fixture
def make_book(lib):
    counter = {"n": 0}

    def _make(copies: int = 1, title: str | None = None):
        counter["n"] += 1
        return lib.add_book(Book(
            title=title or f"Book {counter['n']}",
            author="Some Author",
            serial_number=f"SN-{counter['n']:04d}",
            total_copies=copies,
        ))

    return _make
