"""
URL configuration for the appointments API.

URL Structure:
    /                          POST
    /{id}/                     GET
    /{id}/status/              POST
    /{id}/sessions/            POST
    /{id}/cancel/              POST
    /{id}/link-payment/        POST
    /{id}/assign/              POST

All URLs are prefixed with /api/v1/appointments/ in the main URL configuration.
"""

from django.urls import include, path
from rest_framework.routers import SimpleRouter

from appointments.views import AppointmentViewSet

router = SimpleRouter()
router.register(r"", AppointmentViewSet, basename="appointment")

app_name = "appointments"

urlpatterns = [
    path("", include(router.urls)),
]
