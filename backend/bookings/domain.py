"""Domain helpers for booking state transitions driven by the payments core."""

from __future__ import annotations

from django.utils import timezone

from .models import Booking

# Statuses a released escrow may still move into "completed" from.
COMPLETABLE_STATUSES = (
    Booking.Status.CONFIRMED,
    Booking.Status.ACTIVE,
    Booking.Status.DISPUTED,
)

DISPUTABLE_STATUSES = (
    Booking.Status.CONFIRMED,
    Booking.Status.ACTIVE,
)


def mark_completed(booking_id: int) -> bool:
    """
    Move a booking into the completed state after its escrow was released.

    Returns True when a row changed. Bookings already completed (or cancelled)
    are left alone.
    """
    updated = Booking.objects.filter(
        pk=booking_id,
        status__in=COMPLETABLE_STATUSES,
    ).update(status=Booking.Status.COMPLETED, updated_at=timezone.now())
    return updated == 1


def mark_disputed(booking_id: int) -> bool:
    """Flag an in-progress booking as disputed; returns True when a row changed."""
    updated = Booking.objects.filter(
        pk=booking_id,
        status__in=DISPUTABLE_STATUSES,
    ).update(status=Booking.Status.DISPUTED, updated_at=timezone.now())
    return updated == 1
