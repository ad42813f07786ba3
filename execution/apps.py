from django.apps import AppConfig


class ExecutionConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "execution"

    def ready(self):
        # Job kinds register on import; signals hook position creation and mark price ticks.
        from execution import orders, positions, repricing, signals  # noqa: F401
