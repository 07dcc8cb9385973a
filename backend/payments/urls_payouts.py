from django.urls import path

from . import api

app_name = "payments_payouts"

urlpatterns = [
    path("process/", api.process_payout_view, name="process_payout"),
    path("run-scheduled/", api.run_scheduled_payouts_view, name="run_scheduled_payouts"),
    path("<int:payout_id>/reschedule/", api.reschedule_payout_view, name="reschedule_payout"),
]
