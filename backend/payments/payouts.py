"""Host payout processing: single payouts, scheduled batches and claim reconciliation."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional

from django.conf import settings
from django.db import connection
from django.utils import timezone

from . import ledger
from .models import Payout
from .stripe_api import (
    AmbiguousTransferError,
    ProcessorError,
    TransferResult,
    create_transfer,
    find_transfer,
    normalize_currency,
)

logger = logging.getLogger(__name__)


class PayoutError(Exception):
    """Base class for payout requests that cannot go ahead."""


class PayoutNotFound(PayoutError):
    pass


class PayoutMismatch(PayoutError):
    """Request details disagree with the scheduled payout."""


class PayoutClaimed(PayoutError):
    """Another run already claimed this payout."""


class PayoutNotReschedulable(PayoutError):
    pass


@dataclass
class PayoutItemResult:
    payout_id: int
    status: str
    transfer_id: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        payload = asdict(self)
        if self.paid_at is not None:
            payload["paid_at"] = self.paid_at.isoformat()
        return {key: value for key, value in payload.items() if value is not None}


@dataclass
class PayoutBatchResult:
    processed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    results: list[PayoutItemResult] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
            "results": [item.as_dict() for item in self.results],
        }


def _transfer_for(payout: Payout, *, destination: str, attempt: int) -> TransferResult:
    """Reconcile earlier attempts by group key, then transfer if nothing moved yet."""
    if attempt > 1:
        existing = find_transfer(payout.group_key)
        if existing is not None:
            logger.info(
                "payouts: payout %s already transferred as %s",
                payout.id,
                existing.transfer_id,
            )
            return existing
    idempotency_key = payout.group_key if attempt <= 1 else f"{payout.group_key}:attempt{attempt}"
    return create_transfer(
        amount=payout.amount,
        currency=payout.currency,
        destination=destination,
        group_key=payout.group_key,
        idempotency_key=idempotency_key,
        description=f"Host payout for booking #{payout.booking_id}",
        metadata={
            "kind": "host_payout",
            "payout_id": payout.id,
            "booking_id": payout.booking_id,
            "host_id": payout.host_id,
        },
    )


def _settle(payout: Payout, *, destination: str, now: datetime) -> PayoutItemResult:
    """Run transfer + settle for a payout this caller has already claimed."""
    attempt = payout.attempt_count + 1
    try:
        transfer = _transfer_for(payout, destination=destination, attempt=attempt)
    except (ProcessorError, AmbiguousTransferError) as exc:
        reason = str(exc) or exc.__class__.__name__
        ledger.mark_payout_failed(payout.id, reason=reason, now=now)
        logger.warning(
            "payouts: payout %s failed: %s",
            payout.id,
            reason,
            extra={"payout_id": payout.id, "group_key": payout.group_key},
        )
        raise

    if not ledger.mark_payout_paid(payout.id, transfer_id=transfer.transfer_id, now=now):
        logger.error(
            "payouts: payout %s was transferred as %s but is no longer processing",
            payout.id,
            transfer.transfer_id,
            extra={"payout_id": payout.id, "transfer_id": transfer.transfer_id},
        )
    return PayoutItemResult(
        payout_id=payout.id,
        status=Payout.Status.PAID.value,
        transfer_id=transfer.transfer_id,
        amount=f"{payout.amount}",
        currency=normalize_currency(payout.currency),
        paid_at=now,
    )


def process_payout(
    *,
    payout_id: int,
    destination: str,
    amount,
    currency: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PayoutItemResult:
    """
    Pay a single pending payout to ``destination``.

    Errors propagate to the caller; the payout is left ``failed`` when the
    transfer itself failed.
    """
    now = now or timezone.now()
    payout = ledger.get_payout(payout_id)
    if payout is None or payout.status != Payout.Status.PENDING:
        raise PayoutNotFound("Payout not found or not in pending status")

    try:
        requested = Decimal(str(amount)).quantize(Decimal("0.01"))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise PayoutMismatch("Payout amount is not a number.") from exc
    if requested != payout.amount:
        raise PayoutMismatch(f"Amount {requested} does not match scheduled payout {payout.amount}.")
    if currency and normalize_currency(currency) != normalize_currency(payout.currency):
        raise PayoutMismatch("Currency does not match scheduled payout.")
    account = ledger.payout_account(payout)
    if account is not None and account.stripe_account_id and account.stripe_account_id != destination:
        raise PayoutMismatch("Destination does not match the host's connected account.")

    if not ledger.claim_payout(payout.id, now=now):
        raise PayoutClaimed("Payout is already being processed")
    return _settle(payout, destination=destination, now=now)


def _run_item(payout: Payout, now: datetime) -> PayoutItemResult:
    account = ledger.payout_account(payout)
    if not ledger.claim_payout(payout.id, now=now):
        return PayoutItemResult(payout_id=payout.id, status="skipped", error="claimed by another run")
    try:
        return _settle(payout, destination=account.stripe_account_id, now=now)
    except (ProcessorError, AmbiguousTransferError) as exc:
        return PayoutItemResult(payout_id=payout.id, status=Payout.Status.FAILED.value, error=str(exc))
    except Exception as exc:  # noqa: BLE001
        ledger.mark_payout_failed(payout.id, reason=str(exc) or exc.__class__.__name__, now=now)
        logger.exception("payouts: unexpected error for payout %s", payout.id)
        return PayoutItemResult(payout_id=payout.id, status=Payout.Status.FAILED.value, error=str(exc))


def _run_item_in_worker(payout: Payout, now: datetime) -> PayoutItemResult:
    try:
        return _run_item(payout, now)
    finally:
        connection.close()


def run_scheduled_payouts(now: Optional[datetime] = None) -> PayoutBatchResult:
    """
    Pay every pending payout that is due and whose host account is ready.

    Hosts without charges and payouts enabled keep their payouts pending for a
    later run. One item failing never stops the rest of the batch.
    """
    now = now or timezone.now()
    pending = ledger.due_pending_payouts(now)
    if not pending:
        logger.info("payouts: no pending payouts to process")
        return PayoutBatchResult()

    eligible = []
    for payout in pending:
        account = ledger.payout_account(payout)
        if account is not None and account.is_ready_for_payouts:
            eligible.append(payout)
    logger.info("payouts: found %s eligible payouts out of %s pending", len(eligible), len(pending))

    concurrency = max(1, int(getattr(settings, "PAYOUT_BATCH_CONCURRENCY", 1) or 1))
    if concurrency == 1 or len(eligible) <= 1:
        items = [_run_item(payout, now) for payout in eligible]
    else:
        with ThreadPoolExecutor(max_workers=concurrency) as executor:
            items = list(executor.map(lambda payout: _run_item_in_worker(payout, now), eligible))

    batch = PayoutBatchResult(total=len(eligible), results=items)
    for item in items:
        if item.status == Payout.Status.PAID:
            batch.processed += 1
        elif item.status == Payout.Status.FAILED:
            batch.failed += 1
        else:
            batch.skipped += 1
    logger.info(
        "payouts: scheduled run complete, processed=%s failed=%s skipped=%s",
        batch.processed,
        batch.failed,
        batch.skipped,
    )
    return batch


def reschedule_payout(*, payout_id: int, scheduled_at: datetime) -> Payout:
    """Put a failed payout back in the queue; the next attempt reconciles first."""
    if not ledger.reschedule_failed_payout(payout_id, scheduled_at=scheduled_at):
        if not Payout.objects.filter(pk=payout_id).exists():
            raise PayoutNotFound("Payout not found")
        raise PayoutNotReschedulable("Only failed payouts can be rescheduled")
    return Payout.objects.get(pk=payout_id)


def reconcile_stale_payout_claims(now: Optional[datetime] = None) -> dict[str, int]:
    """Resolve payouts stuck in processing by looking their transfer up in Stripe."""
    now = now or timezone.now()
    paid = failed = unresolved = 0
    for payout in ledger.stale_processing_payouts(now):
        try:
            transfer = find_transfer(payout.group_key)
        except (ProcessorError, AmbiguousTransferError):
            logger.warning("payouts: could not reconcile payout %s", payout.id, exc_info=True)
            unresolved += 1
            continue
        if transfer is not None:
            ledger.mark_payout_paid(payout.id, transfer_id=transfer.transfer_id, now=now)
            paid += 1
        else:
            ledger.mark_payout_failed(payout.id, reason="Claim expired without a transfer", now=now)
            failed += 1
    return {"paid": paid, "failed": failed, "unresolved": unresolved}
