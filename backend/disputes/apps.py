"""Application configuration for escrow disputes."""

from django.apps import AppConfig


class DisputesConfig(AppConfig):
    """Register the disputes app (dispute events on escrow funds)."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "disputes"
