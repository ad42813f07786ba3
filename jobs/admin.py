from django.contrib import admin

from .models import JobQueueEntry
from .poller import resolve_group, retry_entry


@admin.register(JobQueueEntry)
class JobQueueEntryAdmin(admin.ModelAdmin):
    list_display = ("id", "job_class", "arguments", "status", "group_id", "attempts", "hostname", "duration", "created_at")
    list_filter = ("status", "job_class")
    search_fields = ("group_id", "job_class", "error_message")
    actions = ["retry_failed", "resolve_groups"]

    @admin.action(description="Retry failed entries")
    def retry_failed(self, request, queryset):
        retried = sum(1 for entry in queryset.filter(status=JobQueueEntry.Status.FAILED) if retry_entry(entry))
        self.message_user(request, f"Retried {retried} entr(y/ies).")

    @admin.action(description="Resolve the groups of selected entries")
    def resolve_groups(self, request, queryset):
        groups = {entry.group_id for entry in queryset if entry.group_id}
        resolved = sum(resolve_group(group_id, f"resolved by {request.user} via admin") for group_id in groups)
        self.message_user(request, f"Resolved {resolved} entr(y/ies) across {len(groups)} group(s).")
