import re
from typing import Optional

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_SERIAL_RE = re.compile(r"^[A-Z0-9][A-Z0-9-]{2,31}$")


class AccountValidator:
    """Checks for registration and profile input."""

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return bool(_EMAIL_RE.match(email.strip()))

    @staticmethod
    def is_strong_password(password: Optional[str], min_length: int = 8) -> bool:
        # length, upper, lower, digit, special
        if not password or len(password) < min_length:
            return False
        return (
            re.search(r"[A-Z]", password) is not None
            and re.search(r"[a-z]", password) is not None
            and re.search(r"[0-9]", password) is not None
            and re.search(r"[^A-Za-z0-9]", password) is not None
        )


class CatalogValidator:
    """Basic validation for catalog records."""

    @staticmethod
    def normalize_serial(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"\s+", "", raw).upper()

    @staticmethod
    def is_valid_serial(serial: Optional[str]) -> bool:
        return bool(serial) and bool(_SERIAL_RE.match(CatalogValidator.normalize_serial(serial)))

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        t = title.strip()
        if not t:
            return False
        # reject purely numeric titles
        return any(c.isalpha() for c in t)

    @staticmethod
    def validate_author(author: Optional[str]) -> bool:
        if author is None:
            return False
        t = author.strip()
        if not t:
            return False
        return not t.isdigit()


class TextValidator:

    @staticmethod
    def sanitize_text(text: Optional[str]) -> str:
        """Trim and drop angle brackets from free text (notes, names)."""
        if text is None:
            return ""
        return re.sub(r"[<>]", "", text.strip())
