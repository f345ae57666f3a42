from __future__ import annotations


class Book:
    """Represents a single title in the catalog and its copy counters."""

    def __init__(self, title: str, author: str, serial_number: str | None = None, genre: str | None = None,
                 total_copies: int = 1, available_copies: int | None = None,
                 id: int | None = None, created_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.serial_number = serial_number.strip() if serial_number else None
        self.genre = genre.strip() if genre else None
        self.total_copies = int(total_copies)
        # A new title starts with every copy on the shelf
        self.available_copies = self.total_copies if available_copies is None else int(available_copies)
        self.created_at = created_at

    @property
    def available(self) -> bool:
        return self.available_copies > 0

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.serial_number})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "serial_number": self.serial_number,
            "genre": self.genre,
            "total_copies": self.total_copies,
            "available_copies": self.available_copies,
            "available": self.available,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            serial_number=data.get("serial_number"),
            genre=data.get("genre"),
            total_copies=data.get("total_copies", 1),
            available_copies=data.get("available_copies"),
            created_at=data.get("created_at"),
        )
