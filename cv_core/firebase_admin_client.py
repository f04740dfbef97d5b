import threading

import firebase_admin
from firebase_admin import credentials, firestore, storage, db as rtdb
from django.conf import settings

_init_lock = threading.Lock()


def get_app():
    """Initialize the default Firebase app on first use."""
    with _init_lock:
        if not firebase_admin._apps:
            cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_PATH)
            options = {"storageBucket": settings.FIREBASE_STORAGE_BUCKET}
            if settings.FIREBASE_DATABASE_URL:
                options["databaseURL"] = settings.FIREBASE_DATABASE_URL
            firebase_admin.initialize_app(cred, options)
        return firebase_admin.get_app()


def get_db():
    get_app()
    return firestore.client()


def get_bucket():
    """Lazy-load Firebase Storage bucket."""
    get_app()
    return storage.bucket()


def get_presence_root():
    """Realtime Database root reference used by the presence store."""
    get_app()
    return rtdb.reference("/")
