# cv_users/auth.py
import logging
from typing import Optional

from firebase_admin import auth as admin_auth

from cv_core.firebase_admin_client import get_app

logger = logging.getLogger(__name__)


def verify_id_token(token: str) -> Optional[str]:
    """Return the Firebase uid behind an ID token, or None if it does not verify."""
    if not token:
        return None
    try:
        decoded = admin_auth.verify_id_token(token, app=get_app())
    except (ValueError, admin_auth.InvalidIdTokenError, admin_auth.ExpiredIdTokenError,
            admin_auth.RevokedIdTokenError, admin_auth.CertificateFetchError) as exc:
        logger.warning("🔑 rejected ID token: %s", exc)
        return None
    return decoded.get("uid")
