"""Writers for in-app notifications."""

from __future__ import annotations

import logging

from .models import Notification

logger = logging.getLogger(__name__)

ESCROW_DISPUTE = "escrow_dispute"
ESCROW_DISPUTE_TITLE = "Escrow Dispute Filed"


def notify_escrow_dispute(
    *,
    guest_id: int,
    host_id: int,
    escrow_id: int,
    booking_id: int,
    booking_code: str,
    reason: str,
) -> list[Notification]:
    """Tell both parties of a booking that a dispute was filed against its escrow."""
    data = {
        "escrow_id": escrow_id,
        "booking_id": booking_id,
        "dispute_reason": reason,
    }
    rows = [
        Notification(
            user_id=guest_id,
            type=ESCROW_DISPUTE,
            title=ESCROW_DISPUTE_TITLE,
            message=f"A dispute has been filed for your booking {booking_code}. Reason: {reason}",
            data=data,
        ),
        Notification(
            user_id=host_id,
            type=ESCROW_DISPUTE,
            title=ESCROW_DISPUTE_TITLE,
            message=f"A dispute has been filed for booking {booking_code}. Reason: {reason}",
            data=data,
        ),
    ]
    created = Notification.objects.bulk_create(rows)
    logger.info(
        "notifications: escrow dispute sent to users %s and %s",
        guest_id,
        host_id,
        extra={"escrow_id": escrow_id, "booking_id": booking_id},
    )
    return created
