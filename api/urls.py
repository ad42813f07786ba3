from rest_framework import routers

from django.urls import include, path

from .views import (
    ExchangeSymbolViewSet,
    JobQueueEntryViewSet,
    OrderViewSet,
    PositionViewSet,
)

router = routers.DefaultRouter()
router.register(r"positions", PositionViewSet, basename="position")
router.register(r"orders", OrderViewSet, basename="order")
router.register(r"jobs", JobQueueEntryViewSet, basename="job")
router.register(r"symbols", ExchangeSymbolViewSet, basename="symbol")

urlpatterns = [
    path("", include(router.urls)),
]
