"""
URL Configuration for Group Buy
"""
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse
from drf_spectacular.views import SpectacularAPIView, SpectacularSwaggerView, SpectacularRedocView
from apps.payments.views import payment_webhook


def home_view(request):
    """API root information"""
    return JsonResponse({
        'message': 'Welcome to the Group Buy API',
        'version': '1.0.0',
        'documentation': {
            'swagger_ui': f"{request.scheme}://{request.get_host()}/api/docs/",
            'redoc': f"{request.scheme}://{request.get_host()}/api/redoc/",
            'openapi_schema': f"{request.scheme}://{request.get_host()}/api/schema/"
        },
        'endpoints': {
            'api': '/api/v1/',
            'admin': '/admin/',
            'websocket': '/ws/notifications/'
        }
    })


urlpatterns = [
    path('', home_view, name='home'),
    path('admin/', admin.site.urls),

    # API v1 endpoints
    path('api/v1/', include('groupbuy.api_urls')),

    # API Documentation
    path('api/schema/', SpectacularAPIView.as_view(), name='schema'),
    path('api/docs/', SpectacularSwaggerView.as_view(url_name='schema'),
         name='swagger-ui'),
    path('api/redoc/', SpectacularRedocView.as_view(url_name='schema'),
         name='redoc'),

    # Gateway webhooks (outside API versioning and auth)
    path('webhooks/payments/', payment_webhook, name='payment-webhook'),
]
