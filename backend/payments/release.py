"""Escrow release: decide when held funds are due and move them to the host."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from django.utils import timezone

from bookings.domain import mark_completed

from . import ledger
from .models import Escrow
from .stripe_api import (
    AmbiguousTransferError,
    ProcessorError,
    TransferResult,
    create_transfer,
    find_transfer,
)

logger = logging.getLogger(__name__)

RELEASE_HOLD_WINDOW = timedelta(hours=24)
AUTO_RELEASE_REASON = "Automatic release after successful check-in"
RELEASABLE_STATUSES = (Escrow.Status.HELD, Escrow.Status.DISPUTED)


class Decision:
    NO_ESCROW = "no_escrow"
    ALREADY_RELEASED = "already_released"
    DISPUTED = "disputed"
    NO_CHECK_IN = "no_check_in"
    NOT_DUE = "not_due"
    DUE = "due"
    # Outcomes of acting on a "due" decision.
    RELEASED = "released"
    RELEASE_IN_PROGRESS = "release_in_progress"


class EscrowReleaseError(Exception):
    """Base class for release requests that cannot go ahead."""


class EscrowNotFound(EscrowReleaseError):
    pass


class EscrowAlreadyReleased(EscrowReleaseError):
    pass


class EscrowNotReleasable(EscrowReleaseError):
    pass


class InvalidReleaseAmount(EscrowReleaseError):
    pass


class ReleaseAmountExceedsHeld(InvalidReleaseAmount):
    pass


class MissingConnectedAccount(EscrowReleaseError):
    pass


class ReleaseInProgress(EscrowReleaseError):
    """Another caller holds the release claim for this escrow."""


@dataclass(frozen=True)
class ReleaseDecision:
    kind: str
    escrow: Optional[Escrow] = None
    due_at: Optional[datetime] = None
    hours_remaining: Optional[int] = None

    @property
    def is_due(self) -> bool:
        return self.kind == Decision.DUE


@dataclass(frozen=True)
class EscrowRelease:
    escrow_id: int
    booking_id: int
    transfer: TransferResult
    released_amount: Decimal
    released_at: datetime
    already_released: bool = False


@dataclass(frozen=True)
class ReleaseOutcome:
    status: str
    decision: ReleaseDecision
    release: Optional[EscrowRelease] = None


def evaluate_release(booking_id: int, now: Optional[datetime] = None) -> ReleaseDecision:
    """
    Decide whether the escrow for ``booking_id`` is due for release.

    Reads the escrow and check-in rows only; nothing is written. Release is
    due once 24 hours have passed since check-in, the boundary included.
    """
    now = now or timezone.now()
    escrow = ledger.get_escrow_for_booking(booking_id)
    if escrow is None:
        return ReleaseDecision(kind=Decision.NO_ESCROW)
    if escrow.status == Escrow.Status.RELEASED:
        return ReleaseDecision(kind=Decision.ALREADY_RELEASED, escrow=escrow)
    if escrow.status == Escrow.Status.DISPUTED:
        return ReleaseDecision(kind=Decision.DISPUTED, escrow=escrow)

    check_in = ledger.get_check_in(booking_id)
    if check_in is None:
        return ReleaseDecision(kind=Decision.NO_CHECK_IN, escrow=escrow)

    due_at = check_in.checked_in_at + RELEASE_HOLD_WINDOW
    if now < due_at:
        remaining = (due_at - now).total_seconds()
        return ReleaseDecision(
            kind=Decision.NOT_DUE,
            escrow=escrow,
            due_at=due_at,
            hours_remaining=math.ceil(remaining / 3600),
        )
    return ReleaseDecision(kind=Decision.DUE, escrow=escrow, due_at=due_at)


def _parse_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise InvalidReleaseAmount("Release amount is not a number.") from exc
    if not value.is_finite() or value <= Decimal("0"):
        raise InvalidReleaseAmount("Release amount must be greater than zero.")
    return value.quantize(Decimal("0.01"))


def _release_idempotency_key(group_key: str, attempt: int) -> str:
    return group_key if attempt <= 1 else f"{group_key}:attempt{attempt}"


def release_escrow_funds(
    *,
    escrow_id: int,
    amount,
    reason: str = "",
    now: Optional[datetime] = None,
    allowed_statuses: Iterable[str] = RELEASABLE_STATUSES,
) -> EscrowRelease:
    """
    Transfer held funds to the host and mark the escrow released.

    The escrow is claimed before Stripe is called so overlapping callers
    cannot both transfer. The final ledger write only matches the status we
    started from; if it matches nothing, someone else finished the release
    and the result is reported with ``already_released=True``.
    """
    now = now or timezone.now()
    allowed_statuses = tuple(allowed_statuses)

    escrow = ledger.get_escrow_with_parties(escrow_id)
    if escrow is None:
        raise EscrowNotFound("Escrow not found")
    if escrow.status == Escrow.Status.RELEASED:
        raise EscrowAlreadyReleased("Escrow has already been released")
    if escrow.status not in allowed_statuses:
        raise EscrowNotReleasable(f"Escrow is {escrow.status} and cannot be released.")

    release_amount = _parse_amount(amount)
    if release_amount > escrow.held_amount:
        raise ReleaseAmountExceedsHeld(
            f"Release amount {release_amount} exceeds held amount {escrow.held_amount}."
        )

    booking = escrow.booking
    account = ledger.get_connected_account(booking.host_id)
    if account is None or not account.stripe_account_id:
        raise MissingConnectedAccount("Host does not have a connected Stripe account")

    previous_claim = escrow.release_claimed_at
    # An expired claim is resumed under its own key; a fresh claim gets the next one.
    attempt = escrow.release_attempt_count
    if previous_claim is None:
        attempt += 1
    idempotency_key = _release_idempotency_key(escrow.group_key, attempt)
    if not ledger.claim_escrow_release(escrow.id, expected_statuses=allowed_statuses, now=now):
        raise ReleaseInProgress("Escrow release is already in progress")

    log_context = {
        "escrow_id": escrow.id,
        "booking_id": booking.id,
        "group_key": escrow.group_key,
        "attempt": attempt,
    }
    transfer: Optional[TransferResult] = None
    try:
        if previous_claim is not None:
            # An earlier attempt never settled; Stripe may already have the money moving.
            transfer = find_transfer(escrow.group_key)
            if transfer is not None:
                logger.info(
                    "escrow: reusing transfer %s found for expired claim",
                    transfer.transfer_id,
                    extra=log_context,
                )
        if transfer is None:
            transfer = create_transfer(
                amount=release_amount,
                currency=escrow.currency,
                destination=account.stripe_account_id,
                group_key=escrow.group_key,
                idempotency_key=idempotency_key,
                description=f"Escrow release for booking {booking.booking_code}",
                metadata={
                    "kind": "escrow_release",
                    "escrow_id": escrow.id,
                    "booking_id": booking.id,
                    "reason": reason or "Escrow release",
                },
            )
    except ProcessorError:
        ledger.clear_escrow_claim(escrow.id, claimed_at=now)
        logger.warning("escrow: transfer rejected for escrow %s", escrow.id, extra=log_context)
        raise
    except AmbiguousTransferError:
        logger.error(
            "escrow: transfer outcome unknown for escrow %s; claim kept until reconciled",
            escrow.id,
            extra=log_context,
        )
        raise

    released_amount = transfer.amount if previous_claim is not None else release_amount
    written = ledger.mark_escrow_released(
        escrow.id,
        expected_statuses=allowed_statuses,
        claimed_at=now,
        amount=released_amount,
        transfer_id=transfer.transfer_id,
        now=now,
    )
    if not written:
        current = Escrow.objects.filter(pk=escrow.id).first()
        if current is None or current.status != Escrow.Status.RELEASED:
            logger.error(
                "escrow: ledger rejected release of %s after transfer %s",
                released_amount,
                transfer.transfer_id,
                extra=log_context,
            )
            raise EscrowReleaseError("Escrow ledger update was rejected after transfer.")
        logger.info("escrow: %s already released by another caller", escrow.id, extra=log_context)
        return EscrowRelease(
            escrow_id=escrow.id,
            booking_id=booking.id,
            transfer=transfer,
            released_amount=current.released_amount,
            released_at=current.release_date or now,
            already_released=True,
        )

    try:
        mark_completed(booking.id)
    except Exception:
        # Money moved and the escrow says so; the booking status can catch up later.
        logger.exception("escrow: failed to mark booking completed after release", extra=log_context)

    logger.info(
        "escrow: released %s for escrow %s via %s",
        released_amount,
        escrow.id,
        transfer.transfer_id,
        extra=log_context,
    )
    return EscrowRelease(
        escrow_id=escrow.id,
        booking_id=booking.id,
        transfer=transfer,
        released_amount=released_amount,
        released_at=now,
    )


def try_release(booking_id: int, now: Optional[datetime] = None) -> ReleaseOutcome:
    """Release the booking's escrow if it is due; otherwise report why not."""
    now = now or timezone.now()
    decision = evaluate_release(booking_id, now)
    if not decision.is_due:
        return ReleaseOutcome(status=decision.kind, decision=decision)

    try:
        release = release_escrow_funds(
            escrow_id=decision.escrow.id,
            amount=decision.escrow.held_amount,
            reason=AUTO_RELEASE_REASON,
            now=now,
            allowed_statuses=(Escrow.Status.HELD,),
        )
    except EscrowAlreadyReleased:
        return ReleaseOutcome(status=Decision.ALREADY_RELEASED, decision=decision)
    except ReleaseInProgress:
        return ReleaseOutcome(status=Decision.RELEASE_IN_PROGRESS, decision=decision)
    except EscrowNotReleasable:
        return ReleaseOutcome(status=Decision.DISPUTED, decision=decision)

    status = Decision.ALREADY_RELEASED if release.already_released else Decision.RELEASED
    return ReleaseOutcome(status=status, decision=decision, release=release)
