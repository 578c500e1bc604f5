"""
ASGI config for the billing service.

Exposes the ASGI callable as a module-level variable named ``application``.
Webhook and billing job requests are plain synchronous views.

For more information on this file, see:
https://docs.djangoproject.com/en/5.2/howto/deployment/asgi/
"""

import os

from django.core.asgi import get_asgi_application

# Set the default Django settings module for the ASGI application
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "config.settings")

application = get_asgi_application()
