from django import forms
from django.contrib import admin

from .models import Exchange, ExceptionLog, ExchangeSymbol, Trader


@admin.register(Exchange)
class ExchangeAdmin(admin.ModelAdmin):
    list_display = ("canonical", "name", "base_url", "is_active")
    list_filter = ("is_active",)


class TraderAdminForm(forms.ModelForm):
    class Meta:
        model = Trader
        fields = "__all__"
        widgets = {
            "api_secret": forms.PasswordInput(render_value=True),
        }


@admin.register(Trader)
class TraderAdmin(admin.ModelAdmin):
    form = TraderAdminForm
    list_display = ("name", "exchange", "is_active", "updated_at")
    list_editable = ("is_active",)
    list_filter = ("exchange", "is_active")
    search_fields = ("name",)


@admin.register(ExchangeSymbol)
class ExchangeSymbolAdmin(admin.ModelAdmin):
    list_display = (
        "symbol",
        "exchange",
        "side",
        "last_mark_price",
        "price_last_synced_at",
        "tick_size",
        "is_active",
        "is_eligible",
    )
    list_editable = ("side", "is_eligible")
    list_filter = ("exchange", "side", "is_active", "is_eligible")
    search_fields = ("symbol",)


@admin.register(ExceptionLog)
class ExceptionLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "exception_class", "message")
    list_filter = ("exception_class",)
    search_fields = ("exception_class", "message")
    readonly_fields = ("exception_class", "message", "context", "traceback", "created_at")
