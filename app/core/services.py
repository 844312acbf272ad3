"""
Base service layer class.

Services encapsulate business logic separate from views and models. Views
handle HTTP concerns, models handle data, services handle logic. Domain
failures are raised as core.exceptions / payments.exceptions subclasses and
turned into responses by the views.

Usage:
    from core.services import BaseService

    class CheckoutService(BaseService):
        @classmethod
        def create_checkout(cls, registration, success_url, cancel_url):
            with transaction.atomic():
                ...
            cls.get_logger().info("Checkout created", extra={...})
"""

from __future__ import annotations

import logging


class BaseService:
    """
    Base class for service layer classes.

    Design Notes:
        - Use @staticmethod or @classmethod (no instance state)
        - Services should be stateless
        - Raise exceptions for failures; views map them to responses
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get a logger named after the service class."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")
