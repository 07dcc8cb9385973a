"""Stripe transfer helpers shared by escrow release and host payouts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Mapping

import stripe
from django.conf import settings

logger = logging.getLogger(__name__)
TWO_PLACES = Decimal("0.01")


class ProcessorError(Exception):
    """Stripe definitively rejected the request; nothing moved."""


class StripeConfigurationError(ProcessorError):
    """Stripe is not configured correctly in the environment."""


class AmbiguousTransferError(Exception):
    """
    The transfer call ended without a definitive answer (timeout, 5xx).

    The money may or may not have moved. Look the transfer up by its group key
    before trying again.
    """


@dataclass(frozen=True)
class TransferResult:
    transfer_id: str
    amount_cents: int
    currency: str
    destination: str
    group_key: str

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


def _get_stripe_api_key() -> str:
    """Return the configured Stripe API key or raise if missing."""
    api_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not api_key:
        raise StripeConfigurationError("Stripe secret key not configured.")
    return api_key


_http_client = None


def _configure_stripe() -> None:
    """Point the SDK at our key with a bounded timeout on every network call."""
    global _http_client
    stripe.api_key = _get_stripe_api_key()
    stripe.max_network_retries = getattr(settings, "STRIPE_MAX_NETWORK_RETRIES", 2)
    if _http_client is None:
        _http_client = stripe.RequestsClient(
            timeout=getattr(settings, "STRIPE_TIMEOUT_SECONDS", 20.0)
        )
    stripe.default_http_client = _http_client


def _to_cents(amount: Decimal) -> int:
    """Convert Decimal dollars to integer cents, rounding to the nearest cent."""
    cents = (Decimal(str(amount)) * Decimal("100")).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def from_cents(amount_cents: int) -> Decimal:
    """Convert integer cents back to Decimal major units."""
    return (Decimal(amount_cents) / Decimal("100")).quantize(TWO_PLACES)


def normalize_currency(currency: str | None) -> str:
    value = (currency or "").strip().lower()
    return value or getattr(settings, "PAYOUT_DEFAULT_CURRENCY", "usd")


def _handle_stripe_error(exc: stripe.StripeError) -> None:
    """Map Stripe SDK errors onto internal exception types."""
    if isinstance(exc, (stripe.APIConnectionError, stripe.APIError)):
        raise AmbiguousTransferError(
            "Stripe did not confirm the transfer; reconcile before retrying."
        ) from exc
    if isinstance(exc, (stripe.AuthenticationError, stripe.PermissionError)):
        raise StripeConfigurationError("Stripe credentials are invalid or unauthorized.") from exc
    if isinstance(exc, stripe.RateLimitError):
        raise ProcessorError("Stripe rate limit reached, transfer not attempted.") from exc
    if isinstance(exc, stripe.InvalidRequestError):
        raise ProcessorError(exc.user_message or str(exc) or "Invalid transfer request.") from exc
    raise ProcessorError(exc.user_message or str(exc) or "Stripe transfer failure.") from exc


def _object_value(payload: Any, field: str, default: Any = None) -> Any:
    """Safely fetch a field from a Stripe object or dict payload."""
    if isinstance(payload, dict):
        return payload.get(field, default)
    return getattr(payload, field, default)


def _to_result(transfer: Any, *, group_key: str, fallback_destination: str = "") -> TransferResult:
    transfer_id = _object_value(transfer, "id")
    if not transfer_id:
        raise AmbiguousTransferError("Stripe returned a transfer without an id.")
    return TransferResult(
        transfer_id=str(transfer_id),
        amount_cents=int(_object_value(transfer, "amount", 0) or 0),
        currency=str(_object_value(transfer, "currency", "") or ""),
        destination=str(_object_value(transfer, "destination", "") or fallback_destination),
        group_key=group_key,
    )


def create_transfer(
    *,
    amount: Decimal,
    currency: str | None,
    destination: str,
    group_key: str,
    metadata: Mapping[str, Any] | None = None,
    description: str = "",
    idempotency_key: str | None = None,
) -> TransferResult:
    """
    Move ``amount`` (major units) to a connected account.

    ``group_key`` is sent as the Stripe transfer_group and, unless overridden,
    as the idempotency key, so a repeated call for the same logical transfer
    is recognised by Stripe instead of paying twice.
    """
    if not destination:
        raise ProcessorError("Transfer destination account is missing.")
    amount_cents = _to_cents(amount)
    if amount_cents <= 0:
        raise ProcessorError("Transfer amount must be greater than zero.")

    _configure_stripe()
    currency_code = normalize_currency(currency)
    payload_metadata = {key: str(value) for key, value in (metadata or {}).items() if value is not None}
    payload_metadata.setdefault("env", getattr(settings, "STRIPE_ENV", "dev") or "dev")

    logger.info(
        "stripe: creating transfer %s for %s %s to %s",
        group_key,
        amount_cents,
        currency_code,
        destination,
    )
    try:
        transfer = stripe.Transfer.create(
            amount=amount_cents,
            currency=currency_code,
            destination=destination,
            description=description or f"Transfer {group_key}",
            metadata=payload_metadata,
            transfer_group=group_key,
            idempotency_key=idempotency_key or group_key,
        )
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)

    result = _to_result(transfer, group_key=group_key, fallback_destination=destination)
    if not result.amount_cents:
        result = TransferResult(
            transfer_id=result.transfer_id,
            amount_cents=amount_cents,
            currency=result.currency or currency_code,
            destination=result.destination,
            group_key=group_key,
        )
    logger.info("stripe: transfer %s created for %s", result.transfer_id, group_key)
    return result


def find_transfer(group_key: str) -> TransferResult | None:
    """
    Look up an existing transfer by its transfer_group.

    Used to reconcile ambiguous outcomes and expired claims before any retry.
    """
    _configure_stripe()
    try:
        listing = stripe.Transfer.list(transfer_group=group_key, limit=10)
    except stripe.StripeError as exc:
        _handle_stripe_error(exc)

    data = _object_value(listing, "data", None) or []
    for transfer in data:
        if _object_value(transfer, "reversed", False):
            continue
        return _to_result(transfer, group_key=group_key)
    return None
