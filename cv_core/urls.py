"""
URL configuration for cv_core project.

HTTP only carries a health check; the sync engine is served over the
websocket routes in cv_rtchat.routing.
"""
from django.http import JsonResponse
from django.urls import path


def health(request):
    return JsonResponse({"status": "ok"})


urlpatterns = [
    path("health/", health, name="health"),
]
