"""Application configuration for payments."""

from django.apps import AppConfig


class PaymentsConfig(AppConfig):
    """Register the payments app (escrow, payouts, Stripe transfers)."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "payments"
