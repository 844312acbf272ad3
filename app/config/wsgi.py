"""
WSGI config for the event payments backend.

Exposes the WSGI callable as a module-level variable named `application`.
Webhook and checkout requests are handled synchronously; every outbound
gateway call is bounded by PAYMENT_GATEWAY_TIMEOUT_SECONDS.
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_wsgi_application()
