import os
import json
from typing import List, Any, Dict
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable controlling CLI output mode: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def print_list_result(books: List[Any]) -> None:
    """Print the catalog in the current output mode.
    - plain: 'SERIAL - Title by Author (available/total)' lines, or 'No books in library.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("Serial", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Copies", justify="right")
        for b in books:
            table.add_row(b.serial_number, b.title, b.author, f"{b.available_copies}/{b.total_copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.serial_number} - {b.title} by {b.author} ({b.available_copies}/{b.total_copies})")


def print_overdue_result(rows: List[Dict[str, Any]]) -> None:
    """Print overdue borrowings; each row carries the borrowing dict plus ``projected_fine``."""
    mode = get_output_mode()

    if not rows:
        print("No overdue borrowings.")
        return

    if mode == "json":
        print(json.dumps(rows, ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="⏰ Overdue", header_style="bold red")
        table.add_column("ID", justify="right")
        table.add_column("Book")
        table.add_column("User")
        table.add_column("Due")
        table.add_column("Fine", justify="right")
        for r in rows:
            table.add_row(str(r["id"]), r["book"]["title"], r["user"]["name"], r["due_date"],
                          f"{r['projected_fine']:.2f}")
        _console.print(table)
    else:
        for r in rows:
            print(f"#{r['id']} {r['book']['title']} - {r['user']['name']} "
                  f"due {r['due_date']} fine {r['projected_fine']:.2f}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print library statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "total_copies": "Total Copies",
        "available_copies": "Available Copies",
        "total_users": "Users",
        "active_memberships": "Active Memberships",
        "pending_applications": "Pending Applications",
        "open_borrowings": "Open Borrowings",
        "overdue_borrowings": "Overdue Borrowings",
        "unpaid_fines": "Unpaid Fines",
    }

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels.items():
            print(f"{label}: {stats.get(key, 0)}")
