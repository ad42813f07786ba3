from django.contrib import admin
from django.http import HttpResponse, JsonResponse
from django.urls import include, path

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from jobs.models import JobQueueEntry


def health_view(request):
    failed = JobQueueEntry.objects.filter(status=JobQueueEntry.Status.FAILED).count()
    running = JobQueueEntry.objects.filter(status=JobQueueEntry.Status.RUNNING).count()
    return JsonResponse({"status": "ok", "jobs": {"running": running, "failed": failed}})


def metrics_view(request):
    return HttpResponse(generate_latest(), content_type=CONTENT_TYPE_LATEST)


urlpatterns = [
    path("admin/", admin.site.urls),
    path("health", health_view, name="health"),
    path("metrics", metrics_view, name="metrics"),
    path("", include("api.urls")),
]
