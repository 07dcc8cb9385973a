"""
Repository queries and conditional writes for the escrow and payout ledgers.

Every state transition here is a single ``UPDATE ... WHERE status = <expected>``
and reports whether it matched a row. A zero-row result means another caller
got there first; callers decide what that means for them.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from django.conf import settings
from django.db.models import F, Q
from django.utils import timezone

from bookings.models import CheckIn

from .models import ConnectedAccount, Escrow, Payout


def _escrow_claim_ttl() -> timedelta:
    return timedelta(minutes=getattr(settings, "ESCROW_RELEASE_CLAIM_TTL_MINUTES", 30))


def _payout_claim_ttl() -> timedelta:
    return timedelta(minutes=getattr(settings, "PAYOUT_CLAIM_TTL_MINUTES", 30))


# --- Escrow ledger ---


def get_escrow_for_booking(booking_id: int) -> Optional[Escrow]:
    return Escrow.objects.filter(booking_id=booking_id).first()


def get_escrow_with_parties(escrow_id: int) -> Optional[Escrow]:
    """Return the escrow with its booking, guest and host loaded in one query."""
    return (
        Escrow.objects.select_related("booking", "booking__guest", "booking__host")
        .filter(pk=escrow_id)
        .first()
    )


def get_check_in(booking_id: int) -> Optional[CheckIn]:
    return CheckIn.objects.filter(booking_id=booking_id).first()


def held_escrows_checked_in_before(cutoff: datetime) -> Iterable[Escrow]:
    """Held escrows whose guest checked in at or before ``cutoff``."""
    return (
        Escrow.objects.filter(
            status=Escrow.Status.HELD,
            booking__check_in__checked_in_at__lte=cutoff,
        )
        .order_by("booking__check_in__checked_in_at")
        .only("id", "booking_id")
    )


def claim_escrow_release(
    escrow_id: int,
    *,
    expected_statuses: Iterable[str],
    now: datetime,
) -> bool:
    """Reserve an escrow for release; expired claims can be taken over."""
    stale_before = now - _escrow_claim_ttl()
    updated = Escrow.objects.filter(
        Q(release_claimed_at__isnull=True) | Q(release_claimed_at__lt=stale_before),
        pk=escrow_id,
        status__in=list(expected_statuses),
    ).update(
        release_claimed_at=now,
        release_attempt_count=F("release_attempt_count") + 1,
        updated_at=now,
    )
    return updated == 1


def clear_escrow_claim(escrow_id: int, *, claimed_at: datetime) -> bool:
    """Drop our release claim after a definitive transfer failure."""
    updated = Escrow.objects.filter(
        pk=escrow_id,
        release_claimed_at=claimed_at,
    ).exclude(status=Escrow.Status.RELEASED).update(
        release_claimed_at=None, updated_at=timezone.now()
    )
    return updated == 1


def mark_escrow_released(
    escrow_id: int,
    *,
    expected_statuses: Iterable[str],
    claimed_at: datetime,
    amount: Decimal,
    transfer_id: str,
    now: datetime,
) -> bool:
    """Terminal held/disputed -> released write, guarded by status and our claim."""
    updated = Escrow.objects.filter(
        pk=escrow_id,
        status__in=list(expected_statuses),
        release_claimed_at=claimed_at,
        held_amount__gte=amount,
    ).update(
        status=Escrow.Status.RELEASED,
        released_amount=amount,
        release_date=now,
        release_transfer_id=transfer_id,
        release_claimed_at=None,
        updated_at=now,
    )
    return updated == 1


def mark_escrow_disputed(escrow_id: int, *, now: datetime) -> bool:
    """held -> disputed, refused while a live release claim is in flight."""
    stale_before = now - _escrow_claim_ttl()
    updated = Escrow.objects.filter(
        Q(release_claimed_at__isnull=True) | Q(release_claimed_at__lt=stale_before),
        pk=escrow_id,
        status=Escrow.Status.HELD,
    ).update(status=Escrow.Status.DISPUTED, updated_at=now)
    return updated == 1


# --- Connected-account registry ---


def get_connected_account(user_id: Optional[int]) -> Optional[ConnectedAccount]:
    if user_id is None:
        return None
    return ConnectedAccount.objects.filter(user_id=user_id).first()


# --- Payout ledger ---


def get_payout(payout_id: int) -> Optional[Payout]:
    return Payout.objects.select_related("host", "host__connected_account").filter(pk=payout_id).first()


def due_pending_payouts(now: datetime) -> list[Payout]:
    """
    Pending payouts scheduled at or before ``now`` with the host's connected
    account joined in; readiness is judged by the caller.
    """
    return list(
        Payout.objects.filter(
            status=Payout.Status.PENDING,
            scheduled_at__lte=now,
        )
        .select_related("host", "host__connected_account")
        .order_by("scheduled_at", "id")
    )


def payout_account(payout: Payout) -> Optional[ConnectedAccount]:
    try:
        return payout.host.connected_account
    except ConnectedAccount.DoesNotExist:
        return None


def claim_payout(payout_id: int, *, now: datetime) -> bool:
    """Atomically move a payout pending -> processing before any transfer."""
    updated = Payout.objects.filter(
        pk=payout_id,
        status=Payout.Status.PENDING,
    ).update(
        status=Payout.Status.PROCESSING,
        claimed_at=now,
        attempt_count=F("attempt_count") + 1,
        updated_at=now,
    )
    return updated == 1


def mark_payout_paid(payout_id: int, *, transfer_id: str, now: datetime) -> bool:
    updated = Payout.objects.filter(
        pk=payout_id,
        status=Payout.Status.PROCESSING,
    ).update(
        status=Payout.Status.PAID,
        stripe_transfer_id=transfer_id,
        paid_at=now,
        failure_reason="",
        updated_at=now,
    )
    return updated == 1


def mark_payout_failed(payout_id: int, *, reason: str, now: datetime) -> bool:
    updated = Payout.objects.filter(
        pk=payout_id,
        status=Payout.Status.PROCESSING,
    ).update(
        status=Payout.Status.FAILED,
        failure_reason=reason[:2000],
        updated_at=now,
    )
    return updated == 1


def reschedule_failed_payout(payout_id: int, *, scheduled_at: datetime) -> bool:
    updated = Payout.objects.filter(
        pk=payout_id,
        status=Payout.Status.FAILED,
    ).update(
        status=Payout.Status.PENDING,
        scheduled_at=scheduled_at,
        claimed_at=None,
        failure_reason="",
        updated_at=timezone.now(),
    )
    return updated == 1


def stale_processing_payouts(now: datetime) -> list[Payout]:
    return list(
        Payout.objects.filter(
            status=Payout.Status.PROCESSING,
            claimed_at__lt=now - _payout_claim_ttl(),
        ).order_by("claimed_at", "id")
    )
