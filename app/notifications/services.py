"""
Notification service layer.

Sends email through Django's mail framework and records the outcome.

Design Principles:
    - Services are stateless (use class methods)
    - Delivery problems return ServiceResult.failure(), never raise;
      a billing run must not stop because an SMTP server is down
    - Templates come in pairs: {name}.txt (required) and {name}.html
      (optional)

Usage:
    from notifications.services import NotificationService

    result = NotificationService.send_email(
        to="patient@example.com",
        subject="Payment received",
        template_name="billing/email/payment_confirmation",
        context={"patient_name": "Jane Doe", "amount": "150.00"},
        category=NotificationCategory.PAYMENT_CONFIRMATION,
    )
    if not result.success:
        logger.warning(result.error)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.mail import EmailMultiAlternatives
from django.template import TemplateDoesNotExist
from django.template.loader import render_to_string
from django.utils import timezone

from core.services import BaseService, ServiceResult

from notifications.models import DeliveryStatus, Notification

if TYPE_CHECKING:
    import uuid

    from practices.models import Practice

logger = logging.getLogger(__name__)


class NotificationService(BaseService):
    """
    Service for outbound notifications.

    Methods:
        send_email: Render and send a templated email, recording the outcome
        record_skipped: Record a message that was deliberately not sent
    """

    @classmethod
    def send_email(
        cls,
        to: str | None,
        subject: str,
        template_name: str,
        context: dict,
        category: str,
        practice: Practice | None = None,
        reference_type: str = "",
        reference_id: uuid.UUID | None = None,
        from_email: str | None = None,
    ) -> ServiceResult[Notification]:
        """
        Render a template pair and send it.

        Args:
            to: Recipient address; blank or None records a SKIPPED notification
            subject: Email subject line
            template_name: Template path without extension
            context: Template context variables
            category: NotificationCategory value
            practice: Tenant the message is sent for
            reference_type / reference_id: Object the message is about
            from_email: Sender (defaults to DEFAULT_FROM_EMAIL)

        Returns:
            ServiceResult with the Notification record. success is False
            when the message was skipped or the backend failed.
        """
        record = {
            "practice": practice,
            "category": category,
            "subject": subject,
            "reference_type": reference_type,
            "reference_id": reference_id,
        }

        if not to:
            return cls.record_skipped(reason="No email address", **record)

        try:
            text_body = render_to_string(f"{template_name}.txt", context)
        except TemplateDoesNotExist:
            logger.error(f"Missing email template {template_name}.txt")
            raise
        try:
            html_body = render_to_string(f"{template_name}.html", context)
        except TemplateDoesNotExist:
            html_body = None

        message = EmailMultiAlternatives(
            subject=subject,
            body=text_body,
            from_email=from_email or settings.DEFAULT_FROM_EMAIL,
            to=[to],
        )
        if html_body:
            message.attach_alternative(html_body, "text/html")

        try:
            message.send(fail_silently=False)
        except Exception as e:
            notification = Notification.objects.create(
                recipient_email=to,
                body=text_body,
                status=DeliveryStatus.FAILED,
                failure_reason=str(e),
                **record,
            )
            logger.warning(
                "Email delivery failed",
                extra={
                    "notification_id": str(notification.id),
                    "category": category,
                    "error": str(e),
                },
            )
            return ServiceResult.failure(
                f"Failed to send email to {to}: {e}",
                error_code="EMAIL_DELIVERY_FAILED",
            )

        notification = Notification.objects.create(
            recipient_email=to,
            body=text_body,
            status=DeliveryStatus.SENT,
            sent_at=timezone.now(),
            **record,
        )
        logger.info(
            f"Email sent: {subject}",
            extra={"notification_id": str(notification.id), "category": category},
        )
        return ServiceResult.success(notification)

    @classmethod
    def record_skipped(
        cls,
        reason: str,
        category: str,
        subject: str,
        practice: Practice | None = None,
        reference_type: str = "",
        reference_id: uuid.UUID | None = None,
    ) -> ServiceResult[Notification]:
        notification = Notification.objects.create(
            practice=practice,
            category=category,
            subject=subject,
            status=DeliveryStatus.SKIPPED,
            failure_reason=reason,
            reference_type=reference_type,
            reference_id=reference_id,
        )
        logger.debug(
            f"Email skipped: {reason}",
            extra={"notification_id": str(notification.id), "category": category},
        )
        return ServiceResult.failure(reason, error_code="EMAIL_SKIPPED")
