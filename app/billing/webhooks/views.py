"""
Webhook endpoint view.

One endpoint serves every processor; `?processor=` picks the gateway
(default: the primary processor). Each gateway knows its own signature
header.

Usage:
    # In urls.py
    from billing.webhooks.views import payment_webhook

    urlpatterns = [
        path("webhooks/", payment_webhook, name="payment-webhook"),
    ]
"""

from __future__ import annotations

import logging

from django.http import HttpRequest, JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from billing.conf import get_billing_config
from billing.exceptions import UnknownProcessorError, WebhookVerificationError
from billing.webhooks.ingestion import WebhookIngestionService


logger = logging.getLogger(__name__)


@csrf_exempt
@require_POST
def payment_webhook(request: HttpRequest) -> JsonResponse:
    """
    Receive a processor webhook and apply it synchronously.

    The body is passed to the gateway unparsed; signatures are computed
    over the exact bytes.

    Returns:
        JsonResponse with status:
        - 200: Processed, or skipped as a duplicate
        - 400: Unknown processor, missing/invalid signature, malformed body
        - 500: Processing failed; the sender should redeliver
    """
    processor = request.GET.get("processor") or None

    try:
        service = WebhookIngestionService(get_billing_config())
        gateway = service.gateway_for(processor)
        signature = gateway.signature_from_headers(request.headers)
        result = service.ingest(request.body, signature, processor=processor)
    except UnknownProcessorError as e:
        logger.warning("Webhook for unknown processor", extra={"processor": processor})
        return JsonResponse({"error": e.message}, status=400)
    except WebhookVerificationError as e:
        logger.warning(
            "Webhook rejected",
            extra={"processor": processor, "error_code": e.error_code, "error": e.message},
        )
        return JsonResponse({"error": e.message}, status=400)
    except Exception:
        logger.exception("Unexpected error handling webhook", extra={"processor": processor})
        return JsonResponse({"error": "Internal error processing webhook"}, status=500)

    if result.failed:
        body = result.to_response()
        body["error"] = "Webhook processing failed"
        return JsonResponse(body, status=500)

    return JsonResponse(result.to_response(), status=200)
