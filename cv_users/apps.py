from django.apps import AppConfig


class CvUsersConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'cv_users'
