from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from core.models import ExchangeSymbol
from execution.models import Order, Position
from jobs.models import JobQueueEntry
from jobs.poller import enqueue_once, resolve_group, retry_entry
from .serializers import (
    ExchangeSymbolSerializer,
    JobQueueEntrySerializer,
    OrderSerializer,
    PositionSerializer,
)


class PositionViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Position.objects.select_related("trader", "exchange_symbol").prefetch_related("orders")
    serializer_class = PositionSerializer
    permission_classes = [permissions.IsAuthenticatedOrReadOnly]

    def get_queryset(self):
        qs = super().get_queryset()
        status_filter = self.request.query_params.get("status")
        if status_filter:
            qs = qs.filter(status=status_filter)
        return qs

    @action(detail=True, methods=["post"])
    def rollback(self, request, pk=None):
        position = self.get_object()
        if position.is_terminal:
            return Response(
                {"detail": f"position is already {position.status}"},
                status=status.HTTP_409_CONFLICT,
            )
        entry = enqueue_once("rollback-position", [position.pk])
        return Response(
            {"queued": entry is not None, "job_id": entry.pk if entry else None},
            status=status.HTTP_202_ACCEPTED,
        )


class OrderViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Order.objects.all()
    serializer_class = OrderSerializer
    permission_classes = [permissions.AllowAny]

    def get_queryset(self):
        qs = super().get_queryset()
        position_id = self.request.query_params.get("position")
        if position_id:
            qs = qs.filter(position_id=position_id)
        return qs


class JobQueueEntryViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = JobQueueEntry.objects.all()
    serializer_class = JobQueueEntrySerializer
    permission_classes = [permissions.IsAuthenticatedOrReadOnly]

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        if params.get("status"):
            qs = qs.filter(status=params["status"])
        if params.get("group"):
            qs = qs.filter(group_id=params["group"])
        return qs

    @action(detail=True, methods=["post"])
    def retry(self, request, pk=None):
        entry = self.get_object()
        if not retry_entry(entry):
            return Response(
                {"detail": f"job is {entry.status}, only failed jobs can be retried"},
                status=status.HTTP_409_CONFLICT,
            )
        entry.refresh_from_db()
        return Response(JobQueueEntrySerializer(entry).data)

    @action(detail=True, methods=["post"], url_path="resolve-group")
    def resolve_group(self, request, pk=None):
        entry = self.get_object()
        if not entry.group_id:
            return Response({"detail": "job has no group"}, status=status.HTTP_400_BAD_REQUEST)
        note = str(request.data.get("note") or f"resolved by {request.user}")
        resolved = resolve_group(entry.group_id, note)
        return Response({"group_id": entry.group_id, "resolved": resolved})


class ExchangeSymbolViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = ExchangeSymbol.objects.select_related("exchange").order_by("symbol")
    serializer_class = ExchangeSymbolSerializer
    permission_classes = [permissions.AllowAny]
