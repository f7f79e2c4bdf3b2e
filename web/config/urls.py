from django.urls import include, path

urlpatterns = [
    path("api/", include("apps.storefront.urls")),
    path("", include("apps.monitoring.urls")),
]
