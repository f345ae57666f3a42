import logging
import os
import subprocess
import sys
from typing import Optional

import typer
from rich.console import Console

import database
from book import Book
from borrowing_service import BorrowingService
from config import settings
from exceptions import LibraryError
from library import Library
from membership_service import MembershipService
from user import Role
from utils.ui_helpers import print_list_result, print_overdue_result, print_stats_result, set_output_mode

APP_NAME = "Library CLI"

console = Console()


def _is_test_env() -> bool:
    return ("PYTEST_CURRENT_TEST" in os.environ) or (os.environ.get("LIB_CLI_TEST_MODE") == "1")


def _say(message: str, style: str = "") -> None:
    """Plain print under tests, Rich markup otherwise."""
    if _is_test_env() or not style:
        print(message)
    else:
        console.print(f"[{style}]{message}[/]")


class LibraryManager:
    """Per-process service wiring, rebuilt when the database file changes."""

    _instance: Optional[Library] = None
    _memberships: Optional[MembershipService] = None
    _borrowings: Optional[BorrowingService] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = getattr(database, "DATABASE_FILE", None)
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library()
            cls._memberships = MembershipService(cls._instance)
            cls._borrowings = BorrowingService(cls._instance, cls._memberships)
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def memberships(cls) -> MembershipService:
        cls.get_instance()
        return cls._memberships

    @classmethod
    def borrowings(cls) -> BorrowingService:
        cls.get_instance()
        return cls._borrowings


# --- Typer CLI ---
app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global options (e.g. output mode)."""
    logging.basicConfig(level=settings.log_level)
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the schema and seed the default membership types."""
    LibraryManager.memberships()
    _say(f"Database ready at {database.DATABASE_FILE}", "green")


@app.command("create-admin")
def cli_create_admin(
    email: Optional[str] = typer.Option(None, "--email", help="Defaults to ADMIN_EMAIL"),
    password: Optional[str] = typer.Option(None, "--password", help="Defaults to ADMIN_PASSWORD"),
    name: str = typer.Option("Administrator", "--name"),
):
    """Register an admin account."""
    email = email or settings.admin_email
    password = password or settings.admin_password
    if not email or not password:
        _say("Error: an email and password are required (options or ADMIN_EMAIL/ADMIN_PASSWORD).", "red")
        raise typer.Exit(code=1)
    try:
        user = LibraryManager.get_instance().register_user(name, email, password, role=Role.ADMIN)
    except LibraryError as e:
        _say(f"Error: {e.message}", "red")
        raise typer.Exit(code=1)
    _say(f"Admin created: {user.email} (id {user.id})", "green")


@app.command("types")
def cli_types():
    """List membership types with their borrowing limits."""
    for t in LibraryManager.memberships().list_membership_types():
        print(f"{t.name}: up to {t.max_books} books, fee {t.fee:.2f}")


@app.command("list")
def cli_list():
    """List every book in the catalog."""
    print_list_result(LibraryManager.get_instance().list_books())


@app.command("search")
def cli_search(query: str = typer.Argument(..., help="Title, author or serial number")):
    """Search the catalog."""
    books = LibraryManager.get_instance().search_books(query)
    if not books:
        print(f"No books matching '{query}'.")
        return
    print_list_result(books)


@app.command("add")
def cli_add(
    title: str = typer.Argument(..., help="Book title"),
    author: str = typer.Argument(..., help="Book author"),
    serial: Optional[str] = typer.Option(None, "--serial", "-s", help="Serial number (generated when omitted)"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g"),
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies"),
):
    """Add a book to the catalog."""
    try:
        book = LibraryManager.get_instance().add_book(
            Book(title=title, author=author, serial_number=serial, genre=genre, total_copies=copies)
        )
    except LibraryError as e:
        _say(f"Error: {e.message}", "red")
        raise typer.Exit(code=1)
    _say(f"Successfully added: {book.title} by {book.author} [{book.serial_number}]", "green")


@app.command("remove")
def cli_remove(book_id: int):
    """Remove a book that has never been borrowed."""
    try:
        removed = LibraryManager.get_instance().remove_book(book_id)
    except LibraryError as e:
        _say(f"Error: {e.message}", "red")
        raise typer.Exit(code=1)
    if removed:
        _say(f"Book {book_id} has been removed.", "green")
    else:
        _say(f"Book {book_id} not found.", "yellow")


@app.command("overdue")
def cli_overdue():
    """List open borrowings past their due date with the fine owed so far."""
    borrowings = LibraryManager.borrowings()
    rows = []
    for b in borrowings.list_overdue():
        row = b.to_dict()
        row["projected_fine"] = borrowings.projected_fine(b)
        rows.append(row)
    print_overdue_result(rows)


@app.command("stats")
def cli_stats():
    """Show library statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart on code changes"),
):
    """Run the HTTP API with uvicorn."""
    host = host or settings.api_host
    port = int(port or settings.api_port)
    _say(f"Starting API on http://{host}:{port}/")
    args = [sys.executable, "-m", "uvicorn", "api:app", "--host", host, "--port", str(port)]
    if reload:
        args.append("--reload")
    raise typer.Exit(code=subprocess.run(args).returncode)


if __name__ == "__main__":
    app()
