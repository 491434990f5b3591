"""
Escrow app configuration.
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow settlement application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow Payments"
