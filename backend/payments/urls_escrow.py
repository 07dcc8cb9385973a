from django.urls import path

from . import api

app_name = "payments_escrow"

urlpatterns = [
    path("release/", api.release_escrow_funds_view, name="release_escrow_funds"),
    path("trigger-release/", api.trigger_escrow_release_view, name="trigger_escrow_release"),
]
