from django.contrib import admin

from .models import ApiRequestLog, EndpointWeightRecord, IpWeightRecord


@admin.register(IpWeightRecord)
class IpWeightRecordAdmin(admin.ModelAdmin):
    list_display = ("exchange", "ip_address", "current_weight", "last_reset_at")
    list_filter = ("exchange",)


@admin.register(EndpointWeightRecord)
class EndpointWeightRecordAdmin(admin.ModelAdmin):
    list_display = ("exchange", "endpoint", "weight")
    list_filter = ("exchange",)
    search_fields = ("endpoint",)


@admin.register(ApiRequestLog)
class ApiRequestLogAdmin(admin.ModelAdmin):
    list_display = ("created_at", "http_method", "path", "response_code", "ip_address", "duration_ms", "related_position_id")
    list_filter = ("exchange", "http_method", "response_code")
    search_fields = ("path",)
