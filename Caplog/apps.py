from django.apps import AppConfig


class CaplogConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "Caplog"
    verbose_name = "Capabilities Logger"

    def ready(self):
        from . import signals  # noqa: F401
