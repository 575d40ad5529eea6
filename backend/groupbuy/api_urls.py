"""
Main API URL configuration for Group Buy.
Consolidates all app API endpoints.
"""
from django.urls import path, include
from rest_framework.routers import DefaultRouter
from rest_framework_simplejwt.views import (
    TokenObtainPairView,
    TokenRefreshView,
    TokenVerifyView
)

from apps.cycles.views import OrderCycleViewSet

router = DefaultRouter()
router.register(r'cycles', OrderCycleViewSet, basename='cycle')

urlpatterns = [
    # JWT Authentication endpoints
    path('auth/login/', TokenObtainPairView.as_view(), name='token_obtain_pair'),
    path('auth/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('auth/verify/', TokenVerifyView.as_view(), name='token_verify'),

    # Router URLs
    path('', include(router.urls)),

    # Payment endpoints
    path('payments/', include('apps.payments.urls')),
]
