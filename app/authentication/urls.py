"""
URL configuration for the authentication app.

Routes (prefixed with /api/v1/auth/):
    - POST token/          - Obtain JWT access/refresh pair
    - POST token/refresh/  - Refresh an access token
"""

from django.urls import path
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

app_name = "authentication"

urlpatterns = [
    path("token/", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("token/refresh/", TokenRefreshView.as_view(), name="token_refresh"),
]
