from django.apps import AppConfig
class LaboratorConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'laborator'
    verbose_name = 'Laborator'
