from django.apps import AppConfig


class DjangoDirectMessagesConfig(AppConfig):
    name = "django_direct_messages"
    verbose_name = "Direct Messages"
    default_auto_field = "django.db.models.BigAutoField"
