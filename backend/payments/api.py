"""Escrow release and host payout API endpoints."""

from __future__ import annotations

import logging

from rest_framework import serializers, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser, IsAuthenticated

from .payouts import (
    PayoutClaimed,
    PayoutError,
    PayoutMismatch,
    PayoutNotFound,
    PayoutNotReschedulable,
    process_payout,
    reschedule_payout,
    run_scheduled_payouts,
)
from .release import (
    Decision,
    EscrowAlreadyReleased,
    EscrowNotFound,
    EscrowRelease,
    EscrowReleaseError,
    ReleaseInProgress,
    release_escrow_funds,
    try_release,
)
from .responses import error_response, success_response, validation_error_response
from .stripe_api import AmbiguousTransferError, ProcessorError

logger = logging.getLogger(__name__)

OUTCOME_MESSAGES = {
    Decision.NO_ESCROW: "No escrow found for this booking",
    Decision.ALREADY_RELEASED: "Escrow already released",
    Decision.DISPUTED: "Escrow is under dispute; automatic release is on hold",
    Decision.NO_CHECK_IN: "No check-in found for this booking",
    Decision.RELEASE_IN_PROGRESS: "Escrow release already in progress",
    Decision.RELEASED: "Escrow released successfully",
}


class ReleaseEscrowSerializer(serializers.Serializer):
    escrow_id = serializers.IntegerField(min_value=1)
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    reason = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")


class TriggerReleaseSerializer(serializers.Serializer):
    booking_id = serializers.IntegerField(min_value=1)


class ProcessPayoutSerializer(serializers.Serializer):
    payout_id = serializers.IntegerField(min_value=1)
    stripe_account_id = serializers.CharField(max_length=255)
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=0)
    currency = serializers.CharField(max_length=8, required=False, default="usd")


class ReschedulePayoutSerializer(serializers.Serializer):
    scheduled_at = serializers.DateTimeField()


def _transfer_error_response(exc: Exception):
    if isinstance(exc, AmbiguousTransferError):
        return error_response(str(exc), status_code=status.HTTP_502_BAD_GATEWAY)
    return error_response(str(exc) or "Transfer failed.")


def _release_error_response(exc: EscrowReleaseError):
    if isinstance(exc, EscrowNotFound):
        return error_response(str(exc), status_code=status.HTTP_404_NOT_FOUND)
    if isinstance(exc, (EscrowAlreadyReleased, ReleaseInProgress)):
        return error_response(str(exc), status_code=status.HTTP_409_CONFLICT)
    return error_response(str(exc))


def _release_payload(release: EscrowRelease) -> dict:
    transfer = release.transfer
    return {
        "transfer": {
            "id": transfer.transfer_id,
            "amount": f"{transfer.amount}",
            "currency": transfer.currency,
            "destination": transfer.destination,
        },
        "escrow": {
            "id": release.escrow_id,
            "status": "released",
            "released_amount": f"{release.released_amount}",
        },
    }


@api_view(["POST"])
@permission_classes([IsAdminUser])
def release_escrow_funds_view(request):
    """Transfer an escrow's funds to the host and mark it released."""
    serializer = ReleaseEscrowSerializer(data=request.data)
    if not serializer.is_valid():
        return validation_error_response(serializer.errors)
    data = serializer.validated_data

    try:
        release = release_escrow_funds(
            escrow_id=data["escrow_id"],
            amount=data["amount"],
            reason=data.get("reason") or "",
        )
    except EscrowReleaseError as exc:
        return _release_error_response(exc)
    except (ProcessorError, AmbiguousTransferError) as exc:
        logger.warning("escrow: release failed for escrow %s: %s", data["escrow_id"], exc)
        return _transfer_error_response(exc)

    return success_response(_release_payload(release))


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def trigger_escrow_release_view(request):
    """Release a booking's escrow when due, or explain why it is not released yet."""
    serializer = TriggerReleaseSerializer(data=request.data)
    if not serializer.is_valid():
        return validation_error_response(serializer.errors)
    booking_id = serializer.validated_data["booking_id"]

    try:
        outcome = try_release(booking_id)
    except EscrowReleaseError as exc:
        return _release_error_response(exc)
    except (ProcessorError, AmbiguousTransferError) as exc:
        logger.warning("escrow: triggered release failed for booking %s: %s", booking_id, exc)
        return _transfer_error_response(exc)

    decision = outcome.decision
    if outcome.status == Decision.NOT_DUE:
        return success_response(
            {
                "status": outcome.status,
                "message": (
                    f"Escrow release not yet due. {decision.hours_remaining} hours remaining."
                ),
                "hours_remaining": decision.hours_remaining,
                "release_due_at": decision.due_at.isoformat(),
            }
        )

    payload = {"status": outcome.status, "message": OUTCOME_MESSAGES[outcome.status]}
    if outcome.release is not None:
        payload.update(_release_payload(outcome.release))
    return success_response(payload)


@api_view(["POST"])
@permission_classes([IsAdminUser])
def process_payout_view(request):
    """Pay one pending payout to the host's connected account."""
    serializer = ProcessPayoutSerializer(data=request.data)
    if not serializer.is_valid():
        return validation_error_response(serializer.errors)
    data = serializer.validated_data

    try:
        result = process_payout(
            payout_id=data["payout_id"],
            destination=data["stripe_account_id"],
            amount=data["amount"],
            currency=data.get("currency"),
        )
    except PayoutNotFound as exc:
        return error_response(str(exc), status_code=status.HTTP_404_NOT_FOUND)
    except PayoutClaimed as exc:
        return error_response(str(exc), status_code=status.HTTP_409_CONFLICT)
    except PayoutMismatch as exc:
        return error_response(str(exc))
    except (ProcessorError, AmbiguousTransferError) as exc:
        return _transfer_error_response(exc)

    return success_response({"payout": result.as_dict()})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def run_scheduled_payouts_view(request):
    """Run one scheduled payout batch on demand."""
    batch = run_scheduled_payouts()
    message = (
        "Scheduled payout processing complete"
        if batch.total or batch.results
        else "No pending payouts to process"
    )
    return success_response({"message": message, **batch.as_dict()})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def reschedule_payout_view(request, payout_id: int):
    """Return a failed payout to the queue with a new scheduled time."""
    serializer = ReschedulePayoutSerializer(data=request.data)
    if not serializer.is_valid():
        return validation_error_response(serializer.errors)

    try:
        payout = reschedule_payout(
            payout_id=payout_id,
            scheduled_at=serializer.validated_data["scheduled_at"],
        )
    except PayoutNotFound as exc:
        return error_response(str(exc), status_code=status.HTTP_404_NOT_FOUND)
    except PayoutNotReschedulable as exc:
        return error_response(str(exc), status_code=status.HTTP_409_CONFLICT)
    except PayoutError as exc:
        return error_response(str(exc))

    return success_response(
        {
            "payout": {
                "id": payout.id,
                "status": payout.status,
                "scheduled_at": payout.scheduled_at.isoformat(),
            }
        }
    )
