"""
Dispute filing against escrow funds.

``file_dispute`` records the dispute and tells both parties; it never touches
the escrow status. ``dispute_escrow`` is the full flow: it freezes a held escrow
(held -> disputed) so automatic release stops, then files the dispute.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional

from django.db import transaction
from django.utils import timezone

from bookings.domain import mark_disputed
from disputes.models import DisputeEvent
from notifications.inbox import notify_escrow_dispute
from payments import ledger
from payments.models import Escrow

logger = logging.getLogger(__name__)


class DisputeError(Exception):
    """Base class for disputes that cannot be filed."""


class DisputeTargetNotFound(DisputeError):
    pass


class InvalidDisputeReason(DisputeError):
    pass


@dataclass(frozen=True)
class DisputeFiling:
    dispute_id: int
    escrow_id: int
    booking_id: int
    notified_users: list[int] = field(default_factory=list)
    notified: bool = True
    escrow_frozen: bool = False


def _clean_reason(reason: str) -> str:
    cleaned = (reason or "").strip()
    if not cleaned:
        raise InvalidDisputeReason("A dispute reason is required.")
    return cleaned


def _load_target(escrow_id: int) -> Escrow:
    escrow = ledger.get_escrow_with_parties(escrow_id)
    if escrow is None:
        raise DisputeTargetNotFound("Escrow not found")
    booking = escrow.booking
    if booking.guest_id is None or booking.host_id is None:
        raise DisputeTargetNotFound("Guest or host information not found")
    return escrow


def file_dispute(
    *,
    escrow_id: int,
    reason: str,
    filed_by=None,
    now: Optional[datetime] = None,
) -> DisputeFiling:
    """
    Record a dispute on an escrow and notify the guest and host.

    The dispute counts as filed once its event row is written; a failure to
    create the notifications is logged and does not undo it.
    """
    now = now or timezone.now()
    reason = _clean_reason(reason)
    escrow = _load_target(escrow_id)
    booking = escrow.booking

    event = DisputeEvent.objects.create(
        escrow=escrow,
        booking=booking,
        reason=reason,
        filed_by=filed_by,
        filed_at=now,
    )
    log_context = {"escrow_id": escrow.id, "booking_id": booking.id, "dispute_id": event.id}
    logger.info("disputes: dispute %s filed on escrow %s", event.id, escrow.id, extra=log_context)

    notified = True
    try:
        with transaction.atomic():
            notify_escrow_dispute(
                guest_id=booking.guest_id,
                host_id=booking.host_id,
                escrow_id=escrow.id,
                booking_id=booking.id,
                booking_code=booking.booking_code,
                reason=reason,
            )
    except Exception:
        notified = False
        logger.exception("disputes: failed to notify parties of dispute", extra=log_context)

    return DisputeFiling(
        dispute_id=event.id,
        escrow_id=escrow.id,
        booking_id=booking.id,
        notified_users=[booking.guest_id, booking.host_id],
        notified=notified,
    )


def dispute_escrow(
    *,
    escrow_id: int,
    reason: str,
    filed_by=None,
    now: Optional[datetime] = None,
) -> DisputeFiling:
    """
    Freeze the escrow against automatic release when it is still held, then
    file the dispute.

    The dispute is filed whatever the escrow's state. A released escrow, or
    one with a live release claim, keeps its status.
    """
    now = now or timezone.now()
    reason = _clean_reason(reason)
    escrow = _load_target(escrow_id)
    log_context = {"escrow_id": escrow.id, "booking_id": escrow.booking_id}

    frozen = ledger.mark_escrow_disputed(escrow.id, now=now)
    if frozen:
        try:
            mark_disputed(escrow.booking_id)
        except Exception:
            logger.exception("disputes: failed to mark booking disputed", extra=log_context)
    else:
        logger.info("disputes: escrow %s not held, status left unchanged", escrow.id, extra=log_context)

    filing = file_dispute(escrow_id=escrow.id, reason=reason, filed_by=filed_by, now=now)
    return replace(filing, escrow_frozen=frozen)
