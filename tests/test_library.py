import pytest

from book import Book
from exceptions import ConflictError, ForbiddenError, NotFoundError, ValidationError
from user import Role


def test_add_and_find_book(lib):
    book = lib.add_book(Book("The Hobbit", "J.R.R. Tolkien", " hb-001 ", total_copies=3))
    assert book.id is not None
    assert book.serial_number == "HB-001"
    assert book.available_copies == 3

    found = lib.find_book(book.id)
    assert found.title == "The Hobbit"
    assert lib.find_book_by_serial("hb-001").id == book.id


def test_add_book_generates_serial(lib):
    book = lib.add_book(Book("Dune", "Frank Herbert"))
    assert book.serial_number.startswith("BOOK")
    assert len(book.serial_number) == len("BOOK") + 6


def test_add_duplicate_serial_conflicts(lib):
    lib.add_book(Book("Dune", "Frank Herbert", "DUNE-1"))
    with pytest.raises(ConflictError):
        lib.add_book(Book("Dune Messiah", "Frank Herbert", "dune-1"))


@pytest.mark.parametrize("title, author, serial", [
    ("", "Someone", "AB-12"),
    ("Title", "  ", "AB-12"),
    ("Title", "Someone", "a"),
])
def test_add_book_validation(lib, title, author, serial):
    with pytest.raises(ValidationError):
        lib.add_book(Book(title, author, serial))


def test_list_and_search_books(lib):
    lib.add_book(Book("Emma", "Jane Austen", "EM-001"))
    lib.add_book(Book("Persuasion", "Jane Austen", "PE-001"))
    lib.add_book(Book("Ulysses", "James Joyce", "UL-001"))

    assert [b.title for b in lib.list_books()] == ["Emma", "Persuasion", "Ulysses"]
    assert {b.title for b in lib.search_books("austen")} == {"Emma", "Persuasion"}
    assert [b.title for b in lib.search_books("UL-0")] == ["Ulysses"]


def test_update_book_keeps_loans_accounted(lib, borrowings, make_member, make_book):
    book = make_book(copies=2)
    borrowings.borrow(make_member(), book.id)

    updated = lib.update_book(book.id, total_copies=5, genre="Fantasy")
    assert updated.total_copies == 5
    assert updated.available_copies == 4
    assert updated.genre == "Fantasy"

    with pytest.raises(ValidationError):
        lib.update_book(book.id, total_copies=0)


def test_update_missing_book(lib):
    with pytest.raises(NotFoundError):
        lib.update_book(42, title="Nothing")


def test_remove_book(lib, borrowings, make_member, make_book):
    free = make_book()
    assert lib.remove_book(free.id) is True
    assert lib.remove_book(free.id) is False

    lent = make_book()
    borrowings.borrow(make_member(), lent.id)
    with pytest.raises(ConflictError):
        lib.remove_book(lent.id)


def test_register_and_authenticate(lib):
    user = lib.register_user("Grace", "Grace@Example.com", "Secret#123")
    assert user.email == "grace@example.com"
    assert user.role is Role.USER
    assert user.password_hash != "Secret#123"
    assert "password_hash" not in user.to_dict()

    assert lib.authenticate("grace@example.com", "Secret#123").id == user.id
    assert lib.authenticate("grace@example.com", "wrong-password") is None
    assert lib.authenticate("nobody@example.com", "Secret#123") is None


def test_register_validation(lib):
    with pytest.raises(ValidationError):
        lib.register_user("Grace", "not-an-email", "Secret#123")
    with pytest.raises(ValidationError):
        lib.register_user("Grace", "grace@example.com", "short")
    lib.register_user("Grace", "grace@example.com", "Secret#123")
    with pytest.raises(ConflictError):
        lib.register_user("Other Grace", "GRACE@example.com", "Secret#123")


def test_update_user_permissions(lib, admin, reader):
    other = lib.register_user("Other", "other@example.com", "Secret#123")
    with pytest.raises(ForbiddenError):
        lib.update_user(reader, other.id, name="Hacked")
    with pytest.raises(ForbiddenError):
        lib.update_user(reader, reader.id, role="admin")

    renamed = lib.update_user(reader, reader.id, name="Rita R.")
    assert renamed.name == "Rita R."
    promoted = lib.update_user(admin, other.id, role="admin")
    assert promoted.is_admin


def test_member_cannot_be_promoted(lib, admin, memberships, reader):
    memberships.apply_for_membership(reader, "standard", 12)
    with pytest.raises(ConflictError):
        lib.update_user(admin, reader.id, role=Role.ADMIN)


def test_remove_user(lib, admin, memberships, reader, borrowings, make_member, make_book):
    memberships.apply_for_membership(reader, "standard", 12)
    with pytest.raises(ForbiddenError):
        lib.remove_user(reader, reader.id)
    with pytest.raises(ConflictError):
        lib.remove_user(admin, admin.id)

    lib.remove_user(admin, reader.id)
    assert lib.find_user(reader.id) is None
    assert memberships.list_memberships(user_id=reader.id) == []

    borrower = make_member()
    borrowings.borrow(borrower, make_book().id)
    with pytest.raises(ConflictError):
        lib.remove_user(admin, borrower.id)


def test_statistics(lib, borrowings, make_member, make_book, memberships, reader, clock):
    books = [make_book(copies=2), make_book(copies=1)]
    member = make_member()
    memberships.apply_for_membership(reader, "standard", 12)
    borrowings.borrow(member, books[0].id)
    late = borrowings.borrow(member, books[1].id)
    clock.advance(days=16)
    borrowings.return_book(member, late.id)

    stats = lib.get_statistics()
    assert stats["total_books"] == 2
    assert stats["total_copies"] == 3
    assert stats["available_copies"] == 2
    assert stats["active_memberships"] == 1
    assert stats["pending_applications"] == 1
    assert stats["open_borrowings"] == 1
    assert stats["overdue_borrowings"] == 1
    assert stats["unpaid_fines"] == 1.0
