from django.apps import AppConfig


class CvRtchatConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'cv_rtchat'
