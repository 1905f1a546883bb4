import re
from datetime import date
from typing import Any, Dict, Optional

from lending.errors import InvalidArgumentError
from lending.user import USER_TYPES

MAX_TITLE_LENGTH = 200
MAX_AUTHOR_LENGTH = 100
MAX_PUBLISHER_LENGTH = 100
MAX_CATEGORY_LENGTH = 50
MAX_LOCATION_LENGTH = 100
MAX_NAME_LENGTH = 100
MAX_DEPARTMENT_LENGTH = 100
MAX_NOTES_LENGTH = 500
MIN_PASSWORD_LENGTH = 6
MIN_YEAR = 1000

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 shape check: 10 or 13 digits once hyphens are removed."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return raw.replace("-", "").strip()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        return s.isdigit() and len(s) in (10, 13)


class TextValidator:
    """Small text checks shared by the book and user validators."""

    @staticmethod
    def is_non_empty(text: Optional[str]) -> bool:
        return text is not None and bool(text.strip())

    @staticmethod
    def max_length(text: Optional[str], limit: int) -> bool:
        return text is None or len(text.strip()) <= limit

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        return email is not None and bool(EMAIL_RE.match(email.strip()))

    @staticmethod
    def validate_phone(phone: Optional[str]) -> bool:
        return phone is not None and bool(PHONE_RE.match(phone.strip()))


def _require(data: Dict[str, Any], name: str, label: str, limit: int) -> None:
    value = data.get(name)
    if not TextValidator.is_non_empty(value):
        raise InvalidArgumentError(f"{label} is required")
    _limit(data, name, label, limit)


def _limit(data: Dict[str, Any], name: str, label: str, limit: int) -> None:
    value = data.get(name)
    if value is None:
        return
    if not isinstance(value, str):
        raise InvalidArgumentError(f"{label} must be text")
    if not TextValidator.max_length(value, limit):
        raise InvalidArgumentError(f"{label} cannot be more than {limit} characters")


def validate_book_fields(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Validate and normalise book fields. ``partial`` checks only the keys present."""
    if not partial or "title" in data:
        _require(data, "title", "Title", MAX_TITLE_LENGTH)
    if not partial or "author" in data:
        _require(data, "author", "Author", MAX_AUTHOR_LENGTH)
    _limit(data, "publisher", "Publisher", MAX_PUBLISHER_LENGTH)
    _limit(data, "category", "Category", MAX_CATEGORY_LENGTH)
    _limit(data, "location", "Location", MAX_LOCATION_LENGTH)

    cleaned = dict(data)
    isbn = data.get("isbn")
    if isbn is not None and isbn != "":
        if not ISBNValidator.is_valid_isbn(isbn):
            raise InvalidArgumentError("Please enter a valid ISBN")
        cleaned["isbn"] = ISBNValidator.normalize_isbn(isbn)
    elif "isbn" in data:
        cleaned["isbn"] = None

    year = data.get("year")
    if year is not None:
        try:
            year = int(year)
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(f"Invalid year: {data['year']!r}") from e
        if year < MIN_YEAR or year > date.today().year + 1:
            raise InvalidArgumentError(f"Year must be between {MIN_YEAR} and {date.today().year + 1}")
        cleaned["year"] = year

    for name in ("title", "author", "publisher", "category", "location"):
        if isinstance(cleaned.get(name), str):
            cleaned[name] = cleaned[name].strip()
    return cleaned


def validate_user_fields(data: Dict[str, Any], partial: bool = False) -> Dict[str, Any]:
    """Validate and normalise user fields. ``password`` is checked but not hashed here."""
    if not partial or "name" in data:
        _require(data, "name", "Name", MAX_NAME_LENGTH)
    if not partial or "email" in data:
        if not TextValidator.validate_email(data.get("email")):
            raise InvalidArgumentError("Please enter a valid email")
    _limit(data, "department", "Department", MAX_DEPARTMENT_LENGTH)

    cleaned = dict(data)
    if data.get("type") is not None:
        user_type = str(data["type"]).strip().lower()
        if user_type not in USER_TYPES:
            raise InvalidArgumentError(f"User type must be one of: {', '.join(USER_TYPES)}")
        cleaned["type"] = user_type
    if data.get("phone"):
        if not TextValidator.validate_phone(data["phone"]):
            raise InvalidArgumentError("Please enter a valid phone number")
        cleaned["phone"] = data["phone"].strip()
    password = data.get("password")
    if password is not None and len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidArgumentError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if isinstance(cleaned.get("email"), str):
        cleaned["email"] = cleaned["email"].strip().lower()
    if isinstance(cleaned.get("name"), str):
        cleaned["name"] = cleaned["name"].strip()
    return cleaned
