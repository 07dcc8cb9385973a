"""Shared fixtures for bookings, escrow, payout and dispute tests."""

from __future__ import annotations

import itertools
from datetime import timedelta
from decimal import Decimal
from typing import Any, Callable, Optional

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone

from bookings.models import Booking, CheckIn
from payments.models import ConnectedAccount, Escrow, Payout

User = get_user_model()

_booking_codes = itertools.count(1)


def _create_user(*, username: str, **extra) -> User:
    return User.objects.create_user(
        username=username,
        email=f"{username}@example.com",
        password="testpass",
        **extra,
    )


def _connect(user: User, suffix: str, *, ready: bool = True) -> ConnectedAccount:
    return ConnectedAccount.objects.create(
        user=user,
        stripe_account_id=f"acct_test_{suffix}",
        charges_enabled=ready,
        payouts_enabled=ready,
        details_submitted=ready,
        last_synced_at=timezone.now(),
    )


@pytest.fixture
def guest_user(db):
    return _create_user(username="guest", first_name="Gail", last_name="Guest")


@pytest.fixture
def host_user(db):
    user = _create_user(username="host", first_name="Hank", last_name="Host")
    _connect(user, "host")
    return user


@pytest.fixture
def staff_user(db):
    return _create_user(username="staff", is_staff=True)


@pytest.fixture
def host_factory(db) -> Callable[..., User]:
    """Create extra hosts; ``ready=None`` skips the connected account."""
    counter = itertools.count(1)

    def _factory(*, ready: Optional[bool] = True, **extra) -> User:
        suffix = f"host{next(counter)}"
        user = _create_user(username=suffix, **extra)
        if ready is not None:
            _connect(user, suffix, ready=ready)
        return user

    return _factory


@pytest.fixture
def booking_factory(guest_user, host_user) -> Callable[..., Booking]:
    def _factory(**overrides: Any) -> Booking:
        data = {
            "booking_code": f"STB-{next(_booking_codes):05d}",
            "guest": guest_user,
            "host": host_user,
            "status": Booking.Status.CONFIRMED,
        }
        data.update(overrides)
        return Booking.objects.create(**data)

    return _factory


@pytest.fixture
def booking(booking_factory) -> Booking:
    return booking_factory()


@pytest.fixture
def escrow_factory(booking_factory) -> Callable[..., Escrow]:
    def _factory(*, booking: Optional[Booking] = None, **overrides: Any) -> Escrow:
        data = {
            "booking": booking or booking_factory(),
            "held_amount": Decimal("250.00"),
            "currency": "usd",
            "status": Escrow.Status.HELD,
        }
        data.update(overrides)
        return Escrow.objects.create(**data)

    return _factory


@pytest.fixture
def escrow(escrow_factory, booking) -> Escrow:
    return escrow_factory(booking=booking)


@pytest.fixture
def check_in_factory() -> Callable[..., CheckIn]:
    def _factory(booking: Booking, *, checked_in_at=None) -> CheckIn:
        return CheckIn.objects.create(
            booking=booking,
            checked_in_at=checked_in_at or timezone.now(),
        )

    return _factory


@pytest.fixture
def payout_factory(booking_factory, host_user) -> Callable[..., Payout]:
    def _factory(*, host: Optional[User] = None, booking: Optional[Booking] = None, **overrides: Any) -> Payout:
        host = host or host_user
        data = {
            "booking": booking or booking_factory(host=host),
            "host": host,
            "amount": Decimal("120.00"),
            "currency": "usd",
            "status": Payout.Status.PENDING,
            "scheduled_at": timezone.now() - timedelta(hours=1),
        }
        data.update(overrides)
        return Payout.objects.create(**data)

    return _factory


class FakeStripeTransfers:
    """
    Stand-in for ``stripe.Transfer`` that records calls.

    ``fail_with`` raises for every create call; ``fail_destinations`` raises
    only for the listed destination accounts. ``on_create`` runs before the
    transfer is recorded, which lets tests interleave a competing caller.
    """

    def __init__(self) -> None:
        self.created: list[dict] = []
        self.listed: list[dict] = []
        self.by_group: dict[str, list[dict]] = {}
        self.fail_with: Optional[Exception] = None
        self.fail_destinations: dict[str, Exception] = {}
        self.on_create: Optional[Callable[[dict], None]] = None

    def create(self, **kwargs):
        self.created.append(kwargs)
        if self.on_create is not None:
            self.on_create(kwargs)
        error = self.fail_destinations.get(kwargs.get("destination")) or self.fail_with
        if error is not None:
            raise error
        transfer = {
            "id": f"tr_test_{len(self.created)}",
            "amount": kwargs["amount"],
            "currency": kwargs["currency"],
            "destination": kwargs["destination"],
            "transfer_group": kwargs.get("transfer_group"),
            "reversed": False,
        }
        self.record(transfer)
        return transfer

    def list(self, **kwargs):
        self.listed.append(kwargs)
        return {"data": list(self.by_group.get(kwargs.get("transfer_group"), []))}

    def record(self, transfer: dict) -> None:
        self.by_group.setdefault(transfer.get("transfer_group"), []).append(transfer)


@pytest.fixture
def stripe_transfers(monkeypatch, settings) -> FakeStripeTransfers:
    settings.STRIPE_SECRET_KEY = "sk_test_staybook"
    fake = FakeStripeTransfers()
    monkeypatch.setattr("payments.stripe_api.stripe.Transfer.create", fake.create)
    monkeypatch.setattr("payments.stripe_api.stripe.Transfer.list", fake.list)
    return fake
