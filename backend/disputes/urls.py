from django.urls import path

from . import api

app_name = "disputes"

urlpatterns = [
    path("escrow/", api.file_escrow_dispute_view, name="file_escrow_dispute"),
]
