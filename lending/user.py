from __future__ import annotations

import hashlib
import hmac
import secrets

USER_TYPES = ("student", "teacher", "staff")

_PBKDF2_ITERATIONS = 200_000


def hash_password(password: str) -> str:
    """Return a salted PBKDF2-SHA256 hash as ``salt$digest``."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _PBKDF2_ITERATIONS)
    return f"{salt}${digest.hex()}"


def verify_password(password: str, stored: str | None) -> bool:
    if not stored or "$" not in stored:
        return False
    salt, expected = stored.split("$", 1)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), _PBKDF2_ITERATIONS)
    return hmac.compare_digest(digest.hex(), expected)


class User:
    """A borrower: student, teacher or staff member."""

    def __init__(self, id: str, name: str, email: str, type: str = "student",
                 phone: str | None = None, department: str | None = None,
                 is_active: bool = True, password_hash: str | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.type = type.strip().lower()
        self.phone = phone
        self.department = department
        self.is_active = bool(is_active)
        self.password_hash = password_hash
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} <{self.email}> ({self.type})"

    def can_borrow(self) -> bool:
        return self.is_active

    def check_password(self, password: str) -> bool:
        return verify_password(password, self.password_hash)

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "type": self.type}

    def to_dict(self) -> dict:
        # The password hash never leaves the model
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "type": self.type,
            "phone": self.phone,
            "department": self.department,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            type=data.get("type") or "student",
            phone=data.get("phone"),
            department=data.get("department"),
            is_active=bool(data.get("is_active", 1)),
            password_hash=data.get("password_hash"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
