"""
Billing admin configuration.

Money records (transactions, ledger entries, webhook markers) are read-only
audit trails. Staff act on installments through admin actions that go
through the billing services.
"""

from django.contrib import admin, messages

from billing.ledger.models import LedgerEntry
from billing.models import Installment, Invoice, PaymentPlan, PaymentTransaction, WebhookEvent
from billing.services import PaymentPlanService


def cents_display(amount_cents: int, currency: str) -> str:
    return f"{amount_cents / 100:.2f} {currency.upper()}"


class InstallmentInline(admin.TabularInline):
    model = Installment
    extra = 0
    fields = ["sequence_number", "due_date", "amount_cents", "status", "attempt_count", "paid_at"]
    readonly_fields = fields
    can_delete = False
    ordering = ["sequence_number"]

    def has_add_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PaymentPlan)
class PaymentPlanAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "practice",
        "patient",
        "name",
        "total_display",
        "installment_count",
        "frequency",
        "status",
        "created_at",
    ]
    list_filter = ["status", "frequency", "practice"]
    search_fields = ["id", "name", "patient__email", "patient__last_name"]
    readonly_fields = [
        "id",
        "status",
        "completed_at",
        "defaulted_at",
        "cancelled_at",
        "status_reason",
        "created_at",
        "updated_at",
    ]
    ordering = ["-created_at"]
    inlines = [InstallmentInline]

    def total_display(self, obj: PaymentPlan) -> str:
        return cents_display(obj.total_amount_cents, obj.currency)

    total_display.short_description = "Total"


@admin.register(Installment)
class InstallmentAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "plan",
        "sequence_number",
        "due_date",
        "amount_cents",
        "status",
        "attempt_count",
        "last_attempted_at",
        "paid_at",
    ]
    list_filter = ["status", "due_date"]
    search_fields = ["id", "plan__id", "plan__patient__email"]
    readonly_fields = [
        "id",
        "plan",
        "sequence_number",
        "status",
        "attempt_count",
        "last_attempted_at",
        "paid_at",
        "failure_code",
        "failure_reason",
        "reminder_sent_at",
        "created_at",
        "updated_at",
    ]
    ordering = ["due_date", "sequence_number"]
    actions = ["reset_for_retry"]

    @admin.action(description="Reset selected failed installments for retry")
    def reset_for_retry(self, request, queryset):
        reset = 0
        for installment in queryset:
            result = PaymentPlanService.reset_installment(installment)
            if result.success:
                reset += 1
            else:
                self.message_user(request, f"{installment}: {result.error}", level=messages.WARNING)
        self.message_user(request, f"Reset {reset} installments for retry.")

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ["number", "practice", "patient", "status", "needs_review", "created_at"]
    list_filter = ["status", "needs_review", "practice"]
    search_fields = ["number", "patient__email", "patient__last_name"]
    readonly_fields = ["id", "status", "flagged_at", "created_at", "updated_at"]
    ordering = ["-created_at"]

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(PaymentTransaction)
class PaymentTransactionAdmin(admin.ModelAdmin):
    list_display = [
        "id",
        "processor",
        "external_transaction_id",
        "amount_display",
        "status",
        "attempt_number",
        "dispute_status",
        "created_at",
    ]
    list_filter = ["status", "processor", "practice"]
    search_fields = ["id", "external_transaction_id", "patient__email"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def amount_display(self, obj: PaymentTransaction) -> str:
        return cents_display(obj.amount_cents, obj.currency)

    amount_display.short_description = "Amount"

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        return False


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = [
        "event_id",
        "processor",
        "event_type",
        "event_kind",
        "status",
        "delivery_count",
        "processed_at",
        "created_at",
    ]
    list_filter = ["status", "processor", "event_kind"]
    search_fields = ["event_id", "event_type"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Disable delete for webhook events (audit trail)."""
        return False


@admin.register(LedgerEntry)
class LedgerEntryAdmin(admin.ModelAdmin):
    list_display = [
        "created_at",
        "patient",
        "invoice",
        "entry_type",
        "amount_cents",
        "currency",
        "reference_type",
        "idempotency_key",
    ]
    list_filter = ["entry_type", "currency"]
    search_fields = ["idempotency_key", "reference_id", "patient__email", "invoice__number"]
    date_hierarchy = "created_at"
    ordering = ["-created_at"]

    def has_add_permission(self, request) -> bool:
        return False

    def has_change_permission(self, request, obj=None) -> bool:
        return False

    def has_delete_permission(self, request, obj=None) -> bool:
        """Ledger entries are immutable."""
        return False
