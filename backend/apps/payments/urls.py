"""
URL configuration for payment endpoints.
"""
from django.urls import path

from .views import (
    CreateIntentView,
    VerifyPaymentView,
    RefundView
)

app_name = 'payments'

urlpatterns = [
    path(
        'create-intent/',
        CreateIntentView.as_view(),
        name='create-intent'
    ),
    path(
        'verify/',
        VerifyPaymentView.as_view(),
        name='verify'
    ),
    path(
        'refund/',
        RefundView.as_view(),
        name='refund'
    ),
]
