# cv_core/asgi.py

import os

import django
from django.core.asgi import get_asgi_application

# settings must be configured before the consumers are imported
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'cv_core.settings')
django.setup()

from channels.routing import ProtocolTypeRouter, URLRouter  # noqa: E402

from cv_core.services import build_services  # noqa: E402
import cv_rtchat.routing  # noqa: E402

services = build_services()

application = ProtocolTypeRouter({
    "http": get_asgi_application(),
    "websocket": URLRouter(
        cv_rtchat.routing.websocket_urlpatterns(services)
    ),
})
