"""
Notifications app for outbound email.

This app provides:
- Notification model recording every message and its delivery outcome
- NotificationService for rendering and sending templated email

Usage:
    from notifications.services import NotificationService

    result = NotificationService.send_email(
        to=patient.email,
        subject="Payment received",
        template_name="billing/email/payment_confirmation",
        context={...},
        category=NotificationCategory.PAYMENT_CONFIRMATION,
    )
"""
