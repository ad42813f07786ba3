from django.contrib import admin

from jobs.poller import enqueue_once

from .models import Order, Position


class OrderInline(admin.TabularInline):
    model = Order
    extra = 0
    fields = (
        "type",
        "status",
        "price_ratio_percentage",
        "amount_divider",
        "entry_average_price",
        "entry_quantity",
        "filled_average_price",
        "filled_quantity",
        "order_exchange_system_id",
    )
    readonly_fields = fields


@admin.register(Position)
class PositionAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "trader",
        "exchange_symbol",
        "side",
        "status",
        "total_trade_amount",
        "leverage",
        "initial_mark_price",
        "realized_pnl",
        "created_at",
        "closed_at",
    )
    list_filter = ("status", "side", "trader")
    search_fields = ("exchange_symbol__symbol", "comments")
    inlines = [OrderInline]
    actions = ["rollback_positions", "reprice_positions"]

    @admin.action(description="Roll back selected positions")
    def rollback_positions(self, request, queryset):
        queued = sum(
            1 for pos in queryset if not pos.is_terminal and enqueue_once("rollback-position", [pos.pk])
        )
        self.message_user(request, f"Queued {queued} rollback job(s).")

    @admin.action(description="Reprice selected positions")
    def reprice_positions(self, request, queryset):
        from execution.repricing import enqueue_repricing

        queued = enqueue_repricing(queryset.filter(status=Position.Status.SYNCED).values_list("id", flat=True))
        self.message_user(request, f"Queued {queued} repricing job(s).")


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("id", "position", "type", "status", "entry_average_price", "entry_quantity", "filled_quantity", "order_exchange_system_id", "created_at")
    list_filter = ("type", "status")
    search_fields = ("order_exchange_system_id", "error_message")
