"""Tests for scheduled and single host payouts."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

import pytest
import stripe
from django.utils import timezone

from payments import ledger
from payments.models import Payout
from payments.payouts import (
    PayoutClaimed,
    PayoutMismatch,
    PayoutNotFound,
    PayoutNotReschedulable,
    process_payout,
    reconcile_stale_payout_claims,
    reschedule_payout,
    run_scheduled_payouts,
)
from payments.stripe_api import ProcessorError

pytestmark = pytest.mark.django_db


def _statuses(*payouts):
    return [Payout.objects.get(pk=payout.pk).status for payout in payouts]


def test_no_pending_payouts(stripe_transfers):
    batch = run_scheduled_payouts()

    assert batch.as_dict() == {"processed": 0, "failed": 0, "skipped": 0, "total": 0, "results": []}
    assert stripe_transfers.created == []


def test_ineligible_hosts_are_left_pending(host_factory, payout_factory, stripe_transfers):
    ready = [payout_factory(host=host_factory()) for _ in range(3)]
    not_enabled = [payout_factory(host=host_factory(ready=False)) for _ in range(2)]
    no_account = payout_factory(host=host_factory(ready=None))
    future = payout_factory(host=host_factory(), scheduled_at=timezone.now() + timedelta(days=1))
    original_schedule = {p.pk: p.scheduled_at for p in [*not_enabled, no_account]}

    batch = run_scheduled_payouts()

    assert batch.total == 3
    assert batch.processed + batch.failed == len(ready)
    assert batch.processed == 3
    assert _statuses(*ready) == [Payout.Status.PAID] * 3
    for payout in [*not_enabled, no_account]:
        payout.refresh_from_db()
        assert payout.status == Payout.Status.PENDING
        assert payout.scheduled_at == original_schedule[payout.pk]
        assert payout.attempt_count == 0
    future.refresh_from_db()
    assert future.status == Payout.Status.PENDING
    assert len(stripe_transfers.created) == 3


def test_paid_payout_records_transfer(payout_factory, stripe_transfers):
    payout = payout_factory(amount=Decimal("75.25"))

    batch = run_scheduled_payouts()

    call = stripe_transfers.created[0]
    assert call["amount"] == 7525
    assert call["destination"] == "acct_test_host"
    assert call["transfer_group"] == f"payout_{payout.id}"
    assert call["idempotency_key"] == f"payout_{payout.id}"
    payout.refresh_from_db()
    assert payout.status == Payout.Status.PAID
    assert payout.stripe_transfer_id == "tr_test_1"
    assert payout.paid_at is not None
    assert payout.attempt_count == 1
    assert batch.results[0].as_dict()["transfer_id"] == "tr_test_1"


def test_one_failure_does_not_stop_the_batch(host_factory, payout_factory, stripe_transfers):
    good_one = payout_factory(host=host_factory())
    bad_host = host_factory()
    bad = payout_factory(host=bad_host)
    good_two = payout_factory(host=host_factory())
    stripe_transfers.fail_destinations[bad_host.connected_account.stripe_account_id] = (
        stripe.InvalidRequestError("Account cannot receive transfers", "destination")
    )

    batch = run_scheduled_payouts()

    assert (batch.processed, batch.failed, batch.total) == (2, 1, 3)
    assert _statuses(good_one, bad, good_two) == [
        Payout.Status.PAID,
        Payout.Status.FAILED,
        Payout.Status.PAID,
    ]
    bad.refresh_from_db()
    assert "cannot receive transfers" in bad.failure_reason
    failed_items = [item for item in batch.results if item.status == "failed"]
    assert [item.payout_id for item in failed_items] == [bad.id]


def test_ambiguous_failure_marks_payout_failed(payout_factory, stripe_transfers):
    payout = payout_factory()
    stripe_transfers.fail_with = stripe.APIConnectionError("Read timed out")

    batch = run_scheduled_payouts()

    assert batch.failed == 1
    payout.refresh_from_db()
    assert payout.status == Payout.Status.FAILED


def test_unexpected_error_is_contained(payout_factory, stripe_transfers, monkeypatch):
    payout = payout_factory()

    def broken_transfer(**_kwargs):
        raise RuntimeError("serializer exploded")

    monkeypatch.setattr("payments.payouts.create_transfer", broken_transfer)

    batch = run_scheduled_payouts()

    assert batch.failed == 1
    payout.refresh_from_db()
    assert payout.status == Payout.Status.FAILED
    assert payout.failure_reason == "serializer exploded"


def test_payout_claimed_by_another_run_is_skipped(host_factory, payout_factory, stripe_transfers, monkeypatch):
    contested = payout_factory(host=host_factory())
    other = payout_factory(host=host_factory())
    real_claim = ledger.claim_payout

    def racing_claim(payout_id, *, now):
        if payout_id == contested.id:
            Payout.objects.filter(pk=payout_id).update(status=Payout.Status.PROCESSING, claimed_at=now)
        return real_claim(payout_id, now=now)

    monkeypatch.setattr("payments.payouts.ledger.claim_payout", racing_claim)

    batch = run_scheduled_payouts()

    assert (batch.processed, batch.failed, batch.skipped) == (1, 0, 1)
    assert [call["transfer_group"] for call in stripe_transfers.created] == [f"payout_{other.id}"]


def test_process_single_payout(payout_factory, stripe_transfers):
    payout = payout_factory(amount=Decimal("120.00"))

    result = process_payout(
        payout_id=payout.id,
        destination="acct_test_host",
        amount="120.00",
        currency="USD",
    )

    assert result.status == Payout.Status.PAID
    assert result.transfer_id == "tr_test_1"
    assert result.amount == "120.00"
    assert result.currency == "usd"
    payout.refresh_from_db()
    assert payout.status == Payout.Status.PAID


def test_process_payout_rejects_mismatched_amount(payout_factory, stripe_transfers):
    payout = payout_factory(amount=Decimal("120.00"))

    with pytest.raises(PayoutMismatch):
        process_payout(payout_id=payout.id, destination="acct_test_host", amount="999.00")

    payout.refresh_from_db()
    assert payout.status == Payout.Status.PENDING
    assert stripe_transfers.created == []


def test_process_payout_rejects_foreign_destination(payout_factory, stripe_transfers):
    payout = payout_factory()

    with pytest.raises(PayoutMismatch):
        process_payout(payout_id=payout.id, destination="acct_someone_else", amount="120.00")
    assert stripe_transfers.created == []


def test_process_payout_rejects_other_currency(payout_factory, stripe_transfers):
    payout = payout_factory()

    with pytest.raises(PayoutMismatch):
        process_payout(payout_id=payout.id, destination="acct_test_host", amount="120.00", currency="eur")


@pytest.mark.parametrize("status", [Payout.Status.PAID, Payout.Status.PROCESSING, Payout.Status.FAILED])
def test_process_payout_requires_pending(payout_factory, stripe_transfers, status):
    payout = payout_factory(status=status)

    with pytest.raises(PayoutNotFound):
        process_payout(payout_id=payout.id, destination="acct_test_host", amount="120.00")


def test_process_missing_payout(stripe_transfers):
    with pytest.raises(PayoutNotFound):
        process_payout(payout_id=424242, destination="acct_test_host", amount="1.00")


def test_process_payout_claim_race(payout_factory, stripe_transfers, monkeypatch):
    payout = payout_factory()
    monkeypatch.setattr("payments.payouts.ledger.claim_payout", lambda _payout_id, *, now: False)

    with pytest.raises(PayoutClaimed):
        process_payout(payout_id=payout.id, destination="acct_test_host", amount="120.00")
    assert stripe_transfers.created == []


def test_process_payout_failure_marks_failed_and_raises(payout_factory, stripe_transfers):
    payout = payout_factory()
    stripe_transfers.fail_with = stripe.InvalidRequestError("Insufficient platform balance", None)

    with pytest.raises(ProcessorError):
        process_payout(payout_id=payout.id, destination="acct_test_host", amount="120.00")

    payout.refresh_from_db()
    assert payout.status == Payout.Status.FAILED
    assert "Insufficient platform balance" in payout.failure_reason


def test_reschedule_then_retry_uses_attempt_key(payout_factory, stripe_transfers):
    payout = payout_factory()
    stripe_transfers.fail_with = stripe.APIConnectionError("Read timed out")
    run_scheduled_payouts()
    payout.refresh_from_db()
    assert payout.status == Payout.Status.FAILED

    new_time = timezone.now() - timedelta(minutes=1)
    rescheduled = reschedule_payout(payout_id=payout.id, scheduled_at=new_time)
    assert rescheduled.status == Payout.Status.PENDING
    assert rescheduled.scheduled_at == new_time
    assert rescheduled.failure_reason == ""

    stripe_transfers.fail_with = None
    batch = run_scheduled_payouts()

    assert batch.processed == 1
    assert stripe_transfers.listed == [{"transfer_group": f"payout_{payout.id}", "limit": 10}]
    assert stripe_transfers.created[-1]["idempotency_key"] == f"payout_{payout.id}:attempt2"
    payout.refresh_from_db()
    assert payout.attempt_count == 2


def test_retry_reuses_transfer_that_already_moved(payout_factory, stripe_transfers):
    payout = payout_factory(status=Payout.Status.FAILED, attempt_count=1)
    stripe_transfers.record(
        {"id": "tr_earlier", "amount": 12000, "currency": "usd", "destination": "acct_test_host",
         "transfer_group": payout.group_key, "reversed": False}
    )
    reschedule_payout(payout_id=payout.id, scheduled_at=timezone.now() - timedelta(minutes=1))

    run_scheduled_payouts()

    assert stripe_transfers.created == []
    payout.refresh_from_db()
    assert payout.status == Payout.Status.PAID
    assert payout.stripe_transfer_id == "tr_earlier"


def test_reschedule_requires_failed_status(payout_factory):
    payout = payout_factory()

    with pytest.raises(PayoutNotReschedulable):
        reschedule_payout(payout_id=payout.id, scheduled_at=timezone.now())


def test_reschedule_missing_payout():
    with pytest.raises(PayoutNotFound):
        reschedule_payout(payout_id=31337, scheduled_at=timezone.now())


def test_reconcile_stale_claims(payout_factory, stripe_transfers):
    long_ago = timezone.now() - timedelta(hours=2)
    moved = payout_factory(status=Payout.Status.PROCESSING, claimed_at=long_ago, attempt_count=1)
    lost = payout_factory(status=Payout.Status.PROCESSING, claimed_at=long_ago, attempt_count=1)
    fresh = payout_factory(status=Payout.Status.PROCESSING, claimed_at=timezone.now(), attempt_count=1)
    stripe_transfers.record(
        {"id": "tr_moved", "amount": 12000, "currency": "usd", "destination": "acct_test_host",
         "transfer_group": moved.group_key, "reversed": False}
    )

    summary = reconcile_stale_payout_claims()

    assert summary == {"paid": 1, "failed": 1, "unresolved": 0}
    assert _statuses(moved, lost, fresh) == [
        Payout.Status.PAID,
        Payout.Status.FAILED,
        Payout.Status.PROCESSING,
    ]
    moved.refresh_from_db()
    assert moved.stripe_transfer_id == "tr_moved"


def test_reconcile_leaves_claim_when_stripe_unreachable(payout_factory, stripe_transfers, monkeypatch):
    payout = payout_factory(
        status=Payout.Status.PROCESSING,
        claimed_at=timezone.now() - timedelta(hours=2),
    )

    def unreachable(**_kwargs):
        raise stripe.APIConnectionError("Connection reset")

    monkeypatch.setattr("payments.stripe_api.stripe.Transfer.list", unreachable)

    summary = reconcile_stale_payout_claims()

    assert summary == {"paid": 0, "failed": 0, "unresolved": 1}
    payout.refresh_from_db()
    assert payout.status == Payout.Status.PROCESSING