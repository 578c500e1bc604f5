"""
Billing job endpoint.

Called by an external scheduler to run the installment billing job
synchronously. The Celery beat schedule in billing.tasks runs the same job
on deployments with a worker.

Related files:
    - authentication.py: Cron secret check
    - serializers.py: Query parameter overrides
    - workers/billing_scheduler.py: The job itself
"""

import logging

from drf_spectacular.utils import OpenApiParameter, OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing.authentication import CronSecretAuthentication
from billing.conf import get_billing_config
from billing.serializers import BillingJobParamsSerializer
from billing.workers import run_billing_job

logger = logging.getLogger(__name__)


JOB_PARAMETERS = [
    OpenApiParameter("maxRetryAttempts", int, description="Attempts per installment (1-10)"),
    OpenApiParameter("retryIntervalDays", int, description="Days between attempts (0-30)"),
    OpenApiParameter("reminderDaysBeforeDue", int, description="Reminder window in days (0-30)"),
    OpenApiParameter("sendReminders", bool, description="Send upcoming-payment reminders"),
    OpenApiParameter("alertStaffOnFailure", bool, description="Email staff when retries run out"),
]


class BillingJobView(APIView):
    """
    Run the installment billing job.

    GET/POST: /api/v1/billing/jobs/process-installments/

    Responses:
        200: Run completed; counts in the body (per-installment errors included)
        400: Invalid override parameter
        401: Missing or invalid cron secret
        409: Another run is in progress
        500: The run failed
    """

    authentication_classes = [CronSecretAuthentication]
    permission_classes = [IsAuthenticated]
    throttle_classes = []

    @extend_schema(
        summary="Process due installments",
        parameters=JOB_PARAMETERS,
        responses={
            200: OpenApiResponse(description="Run completed"),
            409: OpenApiResponse(description="Another run is in progress"),
            500: OpenApiResponse(description="Run failed"),
        },
        tags=["Billing"],
    )
    def get(self, request):
        return self.run_job(request)

    @extend_schema(
        summary="Process due installments",
        parameters=JOB_PARAMETERS,
        request=None,
        responses={
            200: OpenApiResponse(description="Run completed"),
            409: OpenApiResponse(description="Another run is in progress"),
            500: OpenApiResponse(description="Run failed"),
        },
        tags=["Billing"],
    )
    def post(self, request):
        return self.run_job(request)

    def run_job(self, request) -> Response:
        # Plain dict: QueryDict input would turn an omitted boolean into False
        serializer = BillingJobParamsSerializer(data=request.query_params.dict())
        if not serializer.is_valid():
            return Response(
                {"success": False, "error": "Invalid parameters", "details": serializer.errors},
                status=status.HTTP_400_BAD_REQUEST,
            )

        overrides = serializer.to_overrides()
        logger.info("Billing job triggered over HTTP", extra={"overrides": overrides})

        outcome = run_billing_job(get_billing_config(), overrides=overrides)

        if outcome.skipped:
            return Response(outcome.to_response(), status=status.HTTP_409_CONFLICT)
        if not outcome.success:
            return Response(outcome.to_response(), status=status.HTTP_500_INTERNAL_SERVER_ERROR)
        return Response(outcome.to_response(), status=status.HTTP_200_OK)
