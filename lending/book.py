from __future__ import annotations


class Book:
    """Represents a single physical book that can be lent out."""

    def __init__(self, id: str, title: str, author: str, isbn: str | None = None,
                 publisher: str | None = None, year: int | None = None,
                 category: str | None = None, location: str | None = None,
                 is_available: bool = True,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip() if isbn else None
        self.publisher = publisher
        self.year = year
        self.category = category
        self.location = location
        # Only the availability synchronizer writes this flag
        self.is_available = bool(is_available)
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ID: {self.id})"

    def summary(self) -> dict:
        """The fields embedded in loan payloads."""
        return {"id": self.id, "title": self.title, "author": self.author, "isbn": self.isbn}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "publisher": self.publisher,
            "year": self.year,
            "category": self.category,
            "location": self.location,
            "is_available": self.is_available,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data["id"],
            title=data["title"],
            author=data["author"],
            isbn=data.get("isbn"),
            publisher=data.get("publisher"),
            year=data.get("year"),
            category=data.get("category"),
            location=data.get("location"),
            # SQLite hands booleans back as 0/1
            is_available=bool(data.get("is_available", 1)),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
