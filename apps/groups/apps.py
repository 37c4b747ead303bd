from django.apps import AppConfig


class GroupsConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'apps.groups'
    label = 'groups'
    verbose_name = 'Community groups'

    def ready(self):
        from apps.groups import signals  # noqa: F401
