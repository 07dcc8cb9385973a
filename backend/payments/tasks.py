"""Celery tasks for scheduled payouts, escrow auto-release and payout claim reconciliation."""

from __future__ import annotations

import logging

from celery import shared_task
from django.utils import timezone

from . import ledger
from .payouts import reconcile_stale_payout_claims as reconcile_claims
from .payouts import run_scheduled_payouts
from .release import RELEASE_HOLD_WINDOW, Decision, try_release

logger = logging.getLogger(__name__)


@shared_task(name="payments.process_scheduled_payouts")
def process_scheduled_payouts():
    """
    Pay out due host payouts whose connected accounts are ready.
    Safe to run repeatedly and concurrently; each payout is claimed first.
    """
    return run_scheduled_payouts().as_dict()


@shared_task(name="payments.release_due_escrows")
def release_due_escrows() -> dict[str, int]:
    """Release held escrows whose guests checked in more than 24 hours ago."""
    now = timezone.now()
    released = 0
    checked = 0
    for escrow in ledger.held_escrows_checked_in_before(now - RELEASE_HOLD_WINDOW):
        checked += 1
        try:
            outcome = try_release(escrow.booking_id, now=now)
        except Exception:
            logger.exception("release_due_escrows: failed for booking %s", escrow.booking_id)
            continue
        if outcome.status == Decision.RELEASED:
            released += 1
    return {"released": released, "checked": checked}


@shared_task(name="payments.reconcile_stale_payout_claims")
def reconcile_stale_payout_claims() -> dict[str, int]:
    return reconcile_claims()
