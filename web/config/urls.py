from django.urls import include, path

urlpatterns = [
    path("api/", include("apps.orders.urls", namespace="orders")),
    path("api/", include("apps.monitoring.urls", namespace="monitoring")),
]
