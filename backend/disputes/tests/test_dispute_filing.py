"""Tests for filing disputes against escrow funds."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
from django.utils import timezone

from bookings.models import Booking
from disputes.models import DisputeEvent
from disputes.services.filing import (
    DisputeTargetNotFound,
    InvalidDisputeReason,
    dispute_escrow,
    file_dispute,
)
from notifications.models import Notification
from payments.models import Escrow
from payments.release import Decision, try_release

pytestmark = pytest.mark.django_db


def test_file_dispute_records_event_and_notifies_both_parties(escrow, guest_user, host_user):
    filing = file_dispute(escrow_id=escrow.id, reason="Apartment was not cleaned", filed_by=guest_user)

    assert filing.notified_users == [guest_user.id, host_user.id]
    assert filing.notified is True
    event = DisputeEvent.objects.get()
    assert event.id == filing.dispute_id
    assert event.reason == "Apartment was not cleaned"
    assert event.filed_by == guest_user
    assert event.booking_id == escrow.booking_id

    notifications = Notification.objects.order_by("id")
    assert [n.user_id for n in notifications] == [guest_user.id, host_user.id]
    code = escrow.booking.booking_code
    guest_note, host_note = notifications
    assert guest_note.type == "escrow_dispute"
    assert guest_note.title == "Escrow Dispute Filed"
    assert guest_note.message == (
        f"A dispute has been filed for your booking {code}. Reason: Apartment was not cleaned"
    )
    assert host_note.message == f"A dispute has been filed for booking {code}. Reason: Apartment was not cleaned"
    assert guest_note.data == {
        "escrow_id": escrow.id,
        "booking_id": escrow.booking_id,
        "dispute_reason": "Apartment was not cleaned",
    }


def test_file_dispute_leaves_escrow_status_alone(escrow):
    file_dispute(escrow_id=escrow.id, reason="Noise")

    escrow.refresh_from_db()
    assert escrow.status == Escrow.Status.HELD


def test_notification_failure_does_not_undo_dispute(escrow, guest_user, host_user, monkeypatch):
    def broken_notify(**_kwargs):
        raise RuntimeError("notifications table unavailable")

    monkeypatch.setattr("disputes.services.filing.notify_escrow_dispute", broken_notify)

    filing = file_dispute(escrow_id=escrow.id, reason="Broken heater")

    assert filing.notified is False
    assert filing.notified_users == [guest_user.id, host_user.id]
    assert DisputeEvent.objects.count() == 1
    assert Notification.objects.count() == 0


def test_unknown_escrow():
    with pytest.raises(DisputeTargetNotFound):
        file_dispute(escrow_id=777, reason="Anything")


def test_booking_without_host(escrow_factory, booking_factory):
    escrow = escrow_factory(booking=booking_factory(host=None))

    with pytest.raises(DisputeTargetNotFound):
        file_dispute(escrow_id=escrow.id, reason="Host deleted their account")
    assert DisputeEvent.objects.count() == 0


@pytest.mark.parametrize("reason", ["", "   ", None])
def test_reason_is_required(escrow, reason):
    with pytest.raises(InvalidDisputeReason):
        file_dispute(escrow_id=escrow.id, reason=reason)


def test_dispute_escrow_freezes_release(escrow, check_in_factory, stripe_transfers):
    check_in_factory(escrow.booking, checked_in_at=timezone.now() - timedelta(hours=30))

    filing = dispute_escrow(escrow_id=escrow.id, reason="Damage to furniture")

    assert filing.escrow_frozen is True
    escrow.refresh_from_db()
    escrow.booking.refresh_from_db()
    assert escrow.status == Escrow.Status.DISPUTED
    assert escrow.booking.status == Booking.Status.DISPUTED
    assert DisputeEvent.objects.count() == 1

    outcome = try_release(escrow.booking_id)
    assert outcome.status == Decision.DISPUTED
    assert stripe_transfers.created == []


def test_dispute_escrow_twice_adds_second_event(escrow):
    dispute_escrow(escrow_id=escrow.id, reason="First complaint")
    dispute_escrow(escrow_id=escrow.id, reason="More details")

    escrow.refresh_from_db()
    assert escrow.status == Escrow.Status.DISPUTED
    assert DisputeEvent.objects.count() == 2


def test_released_escrow_dispute_is_filed_without_status_change(escrow_factory):
    escrow = escrow_factory(status=Escrow.Status.RELEASED, released_amount="250.00")

    filing = dispute_escrow(escrow_id=escrow.id, reason="Damage found after checkout")

    assert filing.escrow_frozen is False
    assert filing.notified is True
    assert DisputeEvent.objects.get().id == filing.dispute_id
    assert Notification.objects.count() == 2
    escrow.refresh_from_db()
    assert escrow.status == Escrow.Status.RELEASED
    assert escrow.released_amount == Decimal("250.00")


def test_escrow_mid_release_dispute_is_filed_and_claim_kept(escrow):
    claimed_at = timezone.now()
    Escrow.objects.filter(pk=escrow.id).update(release_claimed_at=claimed_at)

    filing = dispute_escrow(escrow_id=escrow.id, reason="Racing the payout")

    assert filing.escrow_frozen is False
    assert DisputeEvent.objects.count() == 1
    assert Notification.objects.count() == 2
    escrow.refresh_from_db()
    escrow.booking.refresh_from_db()
    assert escrow.status == Escrow.Status.HELD
    assert escrow.release_claimed_at == claimed_at
    assert escrow.booking.status == Booking.Status.CONFIRMED


def test_booking_update_failure_does_not_block_dispute(escrow, monkeypatch):
    def boom(_booking_id):
        raise RuntimeError("lock timeout")

    monkeypatch.setattr("disputes.services.filing.mark_disputed", boom)

    filing = dispute_escrow(escrow_id=escrow.id, reason="Smelled of smoke")

    assert filing.dispute_id
    escrow.refresh_from_db()
    assert escrow.status == Escrow.Status.DISPUTED
