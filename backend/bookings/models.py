"""Database models for stay bookings and guest check-ins."""

from __future__ import annotations

from django.conf import settings
from django.db import models


class Booking(models.Model):
    """A guest's reservation of a host's stay."""

    class Status(models.TextChoices):
        PENDING = "pending", "pending"
        CONFIRMED = "confirmed", "confirmed"
        ACTIVE = "active", "active"
        COMPLETED = "completed", "completed"
        DISPUTED = "disputed", "disputed"
        CANCELLED = "cancelled", "cancelled"

    booking_code = models.CharField(max_length=32, unique=True)
    # Accounts can be deleted; the financial history of the booking stays.
    guest = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="bookings_as_guest",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    host = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        related_name="bookings_as_host",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
    )
    status = models.CharField(
        max_length=16,
        choices=Status.choices,
        default=Status.PENDING,
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["guest", "status"]),
            models.Index(fields=["host", "status"]),
        ]

    def __str__(self) -> str:
        """Return a human-readable representation."""
        return f"Booking {self.booking_code} ({self.status})"

    def is_terminal(self) -> bool:
        """Return True if the booking reached a terminal state."""
        return self.status in {
            self.Status.CANCELLED,
            self.Status.COMPLETED,
        }


class CheckIn(models.Model):
    """Guest arrival recorded by the mobile app; written once, never updated here."""

    booking = models.OneToOneField(
        Booking,
        related_name="check_in",
        on_delete=models.CASCADE,
    )
    checked_in_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-checked_in_at"]

    def __str__(self) -> str:
        return f"CheckIn for booking {self.booking_id} at {self.checked_in_at.isoformat()}"
