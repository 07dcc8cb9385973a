"""API endpoint for filing disputes against escrow funds."""

from __future__ import annotations

from rest_framework import serializers, status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated

from payments.responses import error_response, success_response, validation_error_response

from .services.filing import (
    DisputeError,
    DisputeTargetNotFound,
    dispute_escrow,
)


class FileDisputeSerializer(serializers.Serializer):
    escrow_id = serializers.IntegerField(min_value=1)
    reason = serializers.CharField(max_length=2000, trim_whitespace=True)


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def file_escrow_dispute_view(request):
    """Dispute a booking's escrow; both guest and host are notified."""
    serializer = FileDisputeSerializer(data=request.data)
    if not serializer.is_valid():
        return validation_error_response(serializer.errors)
    data = serializer.validated_data

    try:
        filing = dispute_escrow(
            escrow_id=data["escrow_id"],
            reason=data["reason"],
            filed_by=request.user,
        )
    except DisputeTargetNotFound as exc:
        return error_response(str(exc), status_code=status.HTTP_404_NOT_FOUND)
    except DisputeError as exc:
        return error_response(str(exc))

    return success_response(
        {
            "message": "Dispute notifications sent successfully",
            "escrow_id": filing.escrow_id,
            "dispute_id": filing.dispute_id,
            "notified_users": filing.notified_users,
        }
    )
