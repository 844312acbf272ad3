"""
Events app configuration.

Holds the minimal event and registration records the payment core refers to.
Event CRUD, landing pages and badges live outside this service.
"""

from django.apps import AppConfig


class EventsConfig(AppConfig):
    """Configuration for the events application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "events"
    verbose_name = "Events"
