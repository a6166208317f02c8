"""Payment processor adapter on top of the *merchants* hosted-checkout SDK.

One :class:`MerchantsProcessor` wraps one :class:`merchants.Client`.  The
relay only needs three capabilities from it:

* :meth:`~MerchantsProcessor.start_checkout` – open a hosted payment page for
  a session and return its reference and redirect URL.
* :meth:`~MerchantsProcessor.charge` – confirm that the payment identified by
  a payment-method proof (the processor payment id returned to us) succeeded.
* :meth:`~MerchantsProcessor.parse_event` – decode a provider webhook.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import merchants

from flask_payrelay.exceptions import ChargeError, UpstreamFailure
from flask_payrelay.sessions import PaymentSession, format_amount, token_hint

logger = logging.getLogger(__name__)


def build_invoice_number(entity_id: Any = "WEB", now: float | None = None) -> str:
    """Return an invoice number of the form ``EX042XL17TX``.

    The middle digits are the numeric entity id (0 when the id is not
    numeric) padded to three places; the two after ``XL`` are the current
    second modulo 100.
    """
    try:
        number = int(str(entity_id))
    except (TypeError, ValueError):
        number = 0
    seconds = int(time.time() if now is None else now)
    return f"EX{number:03d}XL{seconds % 100:02d}TX"


@dataclass(frozen=True)
class Checkout:
    """A hosted checkout opened with the processor."""

    reference: str
    redirect_url: str
    provider: str
    amount: Decimal


@dataclass(frozen=True)
class ChargeResult:
    """A payment the processor confirmed."""

    transaction_id: str
    provider: str
    amount: Decimal | None = None
    auth_code: str | None = None
    state: str = "succeeded"


class MerchantsProcessor:
    """Processor capability backed by a :class:`merchants.Client`.

    Args:
        client: The SDK client for one provider.
        currency: ISO-4217 code used for every checkout.
    """

    def __init__(self, client: merchants.Client, *, currency: str = "USD") -> None:
        self._client = client
        self.currency = currency

    @property
    def client(self) -> merchants.Client:
        return self._client

    @property
    def key(self) -> str:
        return self._client._provider.key

    def start_checkout(
        self,
        session: PaymentSession,
        amount: Decimal,
        *,
        success_url: str,
        cancel_url: str,
    ) -> Checkout:
        """Create a hosted checkout for *session*.

        Raises:
            UpstreamFailure: The SDK rejected the request.
        """
        metadata = {
            "entity_type": session.entity.kind.value,
            "entity_id": session.entity.id,
            "flow": session.flow.value,
            "customer_name": session.payer.name,
            "customer_email": session.payer.email,
            "invoice_number": build_invoice_number(session.entity.id),
            "description": describe_payment(session),
        }
        try:
            checkout = self._client.payments.create_checkout(
                amount=format_amount(amount),
                currency=self.currency,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
            )
        except merchants.UserError as exc:
            logger.error("Checkout for session %s rejected: %s", token_hint(session.token), exc)
            raise UpstreamFailure(str(exc)) from exc

        return Checkout(
            reference=checkout.session_id,
            redirect_url=checkout.redirect_url,
            provider=checkout.provider,
            amount=amount,
        )

    def charge(self, amount: Decimal | None, payment_method: str) -> ChargeResult:
        """Confirm the payment *payment_method* with the provider.

        When the provider reports the captured amount it must equal *amount*.

        Raises:
            ChargeError: The provider reports anything but success, a
                different amount, or the lookup itself failed.
        """
        if not payment_method:
            raise ChargeError("Payment method proof is missing.")
        try:
            status = self._client.payments.get(payment_method)
        except merchants.UserError as exc:
            raise ChargeError(str(exc)) from exc

        if not status.is_success:
            logger.warning("Payment %s not successful: %s", payment_method, status.state.value)
            raise ChargeError(f"Payment {payment_method} is {status.state.value}.")

        # Not every provider reports the amount on a status lookup.
        reported = getattr(status, "amount", None)
        if amount is not None and reported is not None and Decimal(str(reported)) != amount:
            logger.warning(
                "Payment %s captured %s, expected %s", payment_method, reported, format_amount(amount)
            )
            raise ChargeError(f"Payment {payment_method} amount does not match.")

        return ChargeResult(
            transaction_id=status.payment_id,
            provider=status.provider,
            amount=amount,
            state=status.state.value,
        )

    def parse_event(self, payload: bytes, headers: dict[str, str]):
        """Decode a provider webhook into a merchants event object."""
        return self._client._provider.parse_webhook(payload, headers)


def describe_payment(session: PaymentSession) -> str:
    """Short human description used for checkouts and emails."""
    names = [item.name for item in session.line_items if item.name.strip()]
    if names:
        suffix = "..." if len(names) > 2 else ""
        return f"Payment for: {', '.join(names[:2])}{suffix}"
    if session.description:
        return session.description
    if session.payer.name:
        return f"Payment for {session.payer.name}"
    return "Payment"
