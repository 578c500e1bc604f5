"""
Shared-secret authentication for the billing job endpoint.

The endpoint is called by an external scheduler (cron, Cloud Scheduler,
Vercel cron), not by users. The caller proves itself with the configured
cron secret, sent either way:

    Authorization: Bearer <secret>
    X-Cron-Secret: <secret>

With no secret configured the endpoint is open only under DEBUG (local
development); otherwise every request is rejected.
"""

from __future__ import annotations

import hmac
import logging

from rest_framework import exceptions
from rest_framework.authentication import BaseAuthentication, get_authorization_header

from billing.conf import get_billing_config

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "X-Cron-Secret"


class CronCaller:
    """Request principal for an authenticated scheduler call."""

    is_authenticated = True
    is_anonymous = False
    is_staff = False
    username = "billing-cron"

    def __str__(self) -> str:
        return self.username


class CronSecretAuthentication(BaseAuthentication):
    keyword = "Bearer"

    def authenticate(self, request):
        config = get_billing_config()
        presented = self.get_presented_secret(request)

        if not config.cron_secret:
            if config.require_cron_secret:
                logger.error("Billing job called but no cron secret is configured")
                raise exceptions.AuthenticationFailed("Cron secret is not configured")
            logger.warning("Billing job called without a configured cron secret")
            return (CronCaller(), None)

        if not presented:
            raise exceptions.NotAuthenticated("Missing cron secret")

        if not hmac.compare_digest(presented.encode(), config.cron_secret.encode()):
            logger.warning(
                "Billing job called with an invalid cron secret",
                extra={"remote_addr": request.META.get("REMOTE_ADDR")},
            )
            raise exceptions.AuthenticationFailed("Invalid cron secret")

        return (CronCaller(), presented)

    def get_presented_secret(self, request) -> str | None:
        auth = get_authorization_header(request).split()
        if auth and auth[0].lower() == self.keyword.lower().encode():
            if len(auth) != 2:
                raise exceptions.AuthenticationFailed("Invalid bearer header")
            try:
                return auth[1].decode()
            except UnicodeError:
                raise exceptions.AuthenticationFailed("Invalid bearer header")
        return request.headers.get(CRON_SECRET_HEADER) or None

    def authenticate_header(self, request) -> str:
        return self.keyword
