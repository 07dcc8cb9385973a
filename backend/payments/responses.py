"""Uniform success/failure bodies for the escrow, payout and dispute endpoints."""

from __future__ import annotations

from rest_framework import status
from rest_framework.response import Response


def success_response(payload: dict | None = None, *, status_code: int = status.HTTP_200_OK) -> Response:
    body = {"success": True}
    body.update(payload or {})
    return Response(body, status=status_code)


def error_response(message: str, *, status_code: int = status.HTTP_400_BAD_REQUEST) -> Response:
    return Response({"error": message, "success": False}, status=status_code)


def validation_error_response(errors: dict) -> Response:
    """Flatten serializer errors into one readable message."""
    parts = []
    for field_name, messages in errors.items():
        if isinstance(messages, (list, tuple)):
            text = " ".join(str(message) for message in messages)
        else:
            text = str(messages)
        parts.append(text if field_name == "non_field_errors" else f"{field_name}: {text}")
    return error_response("; ".join(parts) or "Invalid request.")
