import json

import pytest
from typer.testing import CliRunner

import database
import main
from main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_services(lib, memberships, borrowings, monkeypatch):
    # Share the test's services (and frozen clock) with the CLI commands
    monkeypatch.setattr(main.LibraryManager, "_instance", lib)
    monkeypatch.setattr(main.LibraryManager, "_memberships", memberships)
    monkeypatch.setattr(main.LibraryManager, "_borrowings", borrowings)
    monkeypatch.setattr(main.LibraryManager, "_db_file_snapshot", database.DATABASE_FILE)
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")


def test_list_no_books(lib):
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_book_success(lib):
    result = runner.invoke(app, ["add", "Test Book", "Test Author", "--serial", "tb-100", "--copies", "2"])
    assert result.exit_code == 0
    assert "Successfully added: Test Book by Test Author [TB-100]" in result.stdout
    assert lib.find_book_by_serial("TB-100").total_copies == 2


def test_add_book_duplicate_serial(lib, make_book):
    make_book()
    result = runner.invoke(app, ["add", "Another", "Author", "--serial", "SN-0001"])
    assert result.exit_code == 1
    assert "Error: Serial number SN-0001 already exists." in result.stdout


def test_list_books_plain_and_json(lib, make_book):
    book = make_book(copies=2, title="Emma")
    result = runner.invoke(app, ["list"])
    assert f"{book.serial_number} - Emma by Some Author (2/2)" in result.stdout

    result = runner.invoke(app, ["--output", "json", "list"])
    assert json.loads(result.stdout.strip())[0]["title"] == "Emma"


def test_search(lib, make_book):
    make_book(title="Persuasion")
    assert "Persuasion" in runner.invoke(app, ["search", "persua"]).stdout
    assert "No books matching 'zzz'." in runner.invoke(app, ["search", "zzz"]).stdout


def test_remove_book(lib, make_book):
    book = make_book()
    result = runner.invoke(app, ["remove", str(book.id)])
    assert result.exit_code == 0
    assert f"Book {book.id} has been removed." in result.stdout

    result = runner.invoke(app, ["remove", str(book.id)])
    assert f"Book {book.id} not found." in result.stdout


def test_create_admin(lib):
    result = runner.invoke(app, ["create-admin", "--email", "root@example.com", "--password", "Admin#2024"])
    assert result.exit_code == 0
    assert "Admin created: root@example.com" in result.stdout
    assert lib.find_user_by_email("root@example.com").is_admin


def test_create_admin_requires_credentials(lib, monkeypatch):
    from config import settings

    monkeypatch.setattr(settings, "admin_email", None)
    monkeypatch.setattr(settings, "admin_password", None)
    result = runner.invoke(app, ["create-admin"])
    assert result.exit_code == 1


def test_types(lib):
    result = runner.invoke(app, ["types"])
    assert "standard: up to 3 books" in result.stdout
    assert "premium: up to 5 books" in result.stdout


def test_overdue_report(lib, borrowings, make_member, make_book, clock):
    member = make_member()
    book = make_book(title="Late Book")
    borrowings.borrow(member, book.id)
    assert "No overdue borrowings." in runner.invoke(app, ["overdue"]).stdout

    clock.advance(days=17)
    result = runner.invoke(app, ["overdue"])
    assert result.exit_code == 0
    assert "Late Book - Member 1" in result.stdout
    assert "fine 1.50" in result.stdout


def test_stats(lib, make_book):
    make_book(copies=3)
    result = runner.invoke(app, ["stats"])
    assert result.exit_code == 0
    assert "Total Books: 1" in result.stdout
    assert "Total Copies: 3" in result.stdout
