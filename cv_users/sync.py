# cv_users/sync.py
"""Profile writes to users/{uid}; each refreshes the shared ProfileCache."""
from __future__ import annotations

import logging
from typing import Optional

from cv_core.remote import call_remote

from .firebase_upload import upload_profile_image
from .models import UserProfile

logger = logging.getLogger(__name__)

# python attribute / payload key -> Firestore field
EDITABLE_FIELDS = {
    "fullName": "fullName",
    "full_name": "fullName",
    "username": "username",
    "email": "email",
    "photoURL": "photoURL",
    "photo_url": "photoURL",
    "isPublic": "isPublic",
    "is_public": "isPublic",
}


def normalize_profile_payload(fields: dict) -> dict:
    """Map accepted keys onto the stored field names; unknown keys are an error."""
    data = {}
    for key, value in (fields or {}).items():
        target = EDITABLE_FIELDS.get(key)
        if target is None:
            raise ValueError(f"'{key}' is not an editable profile field")
        if target == "isPublic":
            value = bool(value)
        elif isinstance(value, str):
            value = value.strip()
        data[target] = value
    if "username" in data and not data["username"]:
        raise ValueError("username cannot be empty")
    return data


async def update_profile(db, uid: str, fields: dict, *, profiles=None) -> Optional[UserProfile]:
    data = normalize_profile_payload(fields)
    if not data:
        return profiles.peek(uid) if profiles is not None else None
    await call_remote(db.collection("users").document(uid).set, data, merge=True)
    logger.info("📤 updated users/%s (%s)", uid, ", ".join(sorted(data)))
    if profiles is not None:
        return await profiles.refresh(uid)
    return None


async def set_profile_visibility(db, uid: str, is_public: bool, *, profiles=None) -> Optional[UserProfile]:
    return await update_profile(db, uid, {"isPublic": is_public}, profiles=profiles)


async def upload_profile_photo(db, uid: str, file_obj, *, bucket=None, profiles=None) -> str:
    """Upload to blob key `{uid}` and write the download URL back to the profile."""
    url = await call_remote(upload_profile_image, file_obj, uid, bucket=bucket)
    await update_profile(db, uid, {"photoURL": url}, profiles=profiles)
    return url
