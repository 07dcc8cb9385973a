from django.conf import settings
from django.contrib import admin
from django.urls import include, path

urlpatterns = [
    path("api/escrow/", include("payments.urls_escrow")),
    path("api/payouts/", include("payments.urls_payouts")),
    path("api/disputes/", include("disputes.urls")),
]

if settings.ENABLE_DJANGO_ADMIN:
    urlpatterns.insert(0, path("admin/", admin.site.urls))
