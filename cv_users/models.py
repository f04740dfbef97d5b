# cv_users/models.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class UserProfile:
    """Immutable snapshot of users/{uid} as the chat UI needs it."""

    id: str
    email: str = ""
    full_name: str = ""
    username: str = ""
    photo_url: str = ""
    is_public: bool = True

    @classmethod
    def from_dict(cls, uid: str, data: Optional[dict]) -> "UserProfile":
        data = data or {}
        return cls(
            id=uid,
            email=data.get("email") or "",
            full_name=data.get("fullName") or "",
            username=data.get("username") or "",
            photo_url=data.get("photoURL") or "",
            is_public=bool(data.get("isPublic", True)),
        )

    @classmethod
    def from_snapshot(cls, snap) -> Optional["UserProfile"]:
        if not snap.exists:
            return None
        return cls.from_dict(snap.id, snap.to_dict())

    @property
    def display_name(self) -> str:
        return self.username or self.full_name or "Unknown"

    def matches(self, needle: str) -> bool:
        """Case-insensitive match on the searchable profile fields."""
        needle = (needle or "").strip().lower()
        if not needle:
            return True
        return any(
            needle in (value or "").lower()
            for value in (self.username, self.full_name, self.email)
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "fullName": self.full_name,
            "username": self.username,
            "photoURL": self.photo_url,
            "isPublic": self.is_public,
        }
