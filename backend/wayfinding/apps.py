from django.apps import AppConfig


class WayfindingConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'backend.wayfinding'

    graph_store = None
    anchor_registry = None

    def ready(self):
        from . import services
        services.reset_state()
        # Import signals to register them
        from . import signals  # noqa
