"""Append-only record of disputes filed against held escrow funds."""

from __future__ import annotations

from django.conf import settings
from django.db import models


class DisputeEvent(models.Model):
    """One dispute filing. Rows are written once and never updated."""

    escrow = models.ForeignKey(
        "payments.Escrow",
        on_delete=models.PROTECT,
        related_name="dispute_events",
    )
    booking = models.ForeignKey(
        "bookings.Booking",
        on_delete=models.PROTECT,
        related_name="dispute_events",
    )
    reason = models.TextField()
    filed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="escrow_disputes_filed",
    )
    filed_at = models.DateTimeField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-filed_at", "-id"]
        indexes = [
            models.Index(fields=["escrow", "filed_at"]),
        ]

    def __str__(self) -> str:
        return f"Dispute #{self.pk} on escrow {self.escrow_id}"
