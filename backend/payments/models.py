from django.conf import settings
from django.db import models


class ConnectedAccount(models.Model):
    """Stripe Connect account tracking for hosts; written by the onboarding flow only."""

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="connected_account",
    )
    stripe_account_id = models.CharField(max_length=255, blank=True, default="")
    charges_enabled = models.BooleanField(default=False)
    payouts_enabled = models.BooleanField(default=False)
    details_submitted = models.BooleanField(default=False)
    last_synced_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-last_synced_at", "user_id"]

    def __str__(self) -> str:
        return f"{self.user} - {self.stripe_account_id}"

    @property
    def is_ready_for_payouts(self) -> bool:
        """Charges and payouts enabled, and Stripe gave us an account id."""
        return bool(self.charges_enabled and self.payouts_enabled and self.stripe_account_id)


class Escrow(models.Model):
    """Guest funds held for a booking until the release condition is met."""

    class Status(models.TextChoices):
        HELD = "held", "Held"
        DISPUTED = "disputed", "Disputed"
        RELEASED = "released", "Released"

    booking = models.OneToOneField(
        "bookings.Booking",
        on_delete=models.PROTECT,
        related_name="escrow",
    )
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.HELD)
    held_amount = models.DecimalField(max_digits=10, decimal_places=2)
    released_amount = models.DecimalField(max_digits=10, decimal_places=2, default=0)
    currency = models.CharField(max_length=8, default="usd")
    release_date = models.DateTimeField(null=True, blank=True)
    release_transfer_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Stripe Transfer id that moved the released funds.",
    )
    release_claimed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Set while a release transfer is in flight.",
    )
    release_attempt_count = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"]),
        ]
        constraints = [
            models.CheckConstraint(
                condition=models.Q(released_amount__lte=models.F("held_amount")),
                name="escrow_released_lte_held",
            ),
        ]

    def __str__(self) -> str:
        return f"Escrow #{self.pk} booking {self.booking_id} ({self.status})"

    @property
    def group_key(self) -> str:
        return f"escrow_{self.pk}"


class Payout(models.Model):
    """Scheduled disbursement of a host's share for one booking."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PROCESSING = "processing", "Processing"
        PAID = "paid", "Paid"
        FAILED = "failed", "Failed"

    booking = models.ForeignKey(
        "bookings.Booking",
        on_delete=models.PROTECT,
        related_name="payouts",
    )
    host = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="payouts",
    )
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    currency = models.CharField(max_length=8, default="usd")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    scheduled_at = models.DateTimeField()
    stripe_transfer_id = models.CharField(max_length=255, blank=True, default="")
    paid_at = models.DateTimeField(null=True, blank=True)
    claimed_at = models.DateTimeField(null=True, blank=True)
    attempt_count = models.PositiveIntegerField(default=0)
    failure_reason = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["scheduled_at", "id"]
        indexes = [
            models.Index(fields=["status", "scheduled_at"]),
            models.Index(fields=["host", "status"]),
        ]

    def __str__(self) -> str:
        return f"Payout #{self.pk} {self.amount} {self.currency} ({self.status})"

    @property
    def group_key(self) -> str:
        return f"payout_{self.pk}"
