from pathlib import Path
import os
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

env_path = BASE_DIR / ".env"
load_dotenv(dotenv_path=str(env_path), encoding="utf-8-sig")
SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "conversa-dev-only-secret")

DEBUG = os.environ.get("DJANGO_DEBUG", "1") == "1"

ALLOWED_HOSTS = ['localhost', '127.0.0.1']

INSTALLED_APPS = [
    'daphne',
    'django.contrib.contenttypes',
    'django.contrib.staticfiles',
    'channels',
    'cv_users',
    'cv_rtchat',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'cv_core.urls'

ASGI_APPLICATION = 'cv_core.asgi.application'

# The sync engine is a single local client; no cross-process fan-out needed.
CHANNEL_LAYERS = {
    "default": {
        "BACKEND": "channels.layers.InMemoryChannelLayer",
    },
}

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# Firebase
FIREBASE_CREDENTIALS_PATH = os.environ.get(
    "FIREBASE_CREDENTIALS_PATH", str(BASE_DIR / "firebase-key.json")
)
FIREBASE_STORAGE_BUCKET = os.environ.get("FIREBASE_STORAGE_BUCKET", "")
FIREBASE_DATABASE_URL = os.environ.get("FIREBASE_DATABASE_URL", "")

# Sync engine tuning
CONVERSA_MESSAGE_WINDOW = int(os.environ.get("CONVERSA_MESSAGE_WINDOW", 50))
CONVERSA_READ_SWEEP_SECONDS = float(os.environ.get("CONVERSA_READ_SWEEP_SECONDS", 2.0))
CONVERSA_PROFILE_WAIT_SECONDS = float(os.environ.get("CONVERSA_PROFILE_WAIT_SECONDS", 5.0))
CONVERSA_MEDIA_CACHE_COUNT = int(os.environ.get("CONVERSA_MEDIA_CACHE_COUNT", 100))
CONVERSA_MEDIA_CACHE_BYTES = int(os.environ.get("CONVERSA_MEDIA_CACHE_BYTES", 50 * 1024 * 1024))
CONVERSA_SUMMARY_SCAN = 5
CONVERSA_BATCH_SIZE = 400  # Firestore hard limit is 500 writes per batch
PRESENCE_ONLINE_WINDOW_SECONDS = int(os.environ.get("PRESENCE_ONLINE_WINDOW_SECONDS", 120))  #2 minutes
PRESENCE_HEARTBEAT_SECONDS = float(os.environ.get("PRESENCE_HEARTBEAT_SECONDS", 30))

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "loggers": {
        "cv_core": {"handlers": ["console"], "level": os.environ.get("CONVERSA_LOG_LEVEL", "INFO")},
        "cv_users": {"handlers": ["console"], "level": os.environ.get("CONVERSA_LOG_LEVEL", "INFO")},
        "cv_rtchat": {"handlers": ["console"], "level": os.environ.get("CONVERSA_LOG_LEVEL", "INFO")},
    },
}
