"""flask_payrelay – Flask/Quart extension relaying CRM payment links to a hosted checkout."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable

import merchants
from merchants.providers.dummy import DummyProvider

from flask_payrelay.backends import RedisBackend, SessionBackend
from flask_payrelay.crm import (
    CrmClient,
    format_products_summary,
    line_items_from_rows,
    payer_from_contact,
)
from flask_payrelay.exceptions import InvalidRequest, UpstreamFailure
from flask_payrelay.mailer import PAYMENT_CONFIRMATION, PAYMENT_LINK, HttpMailer, LogMailer
from flask_payrelay.processor import ChargeResult, MerchantsProcessor, build_invoice_number
from flask_payrelay.sessions import (
    EntityKind,
    EntityReference,
    FlowKind,
    LineItem,
    PayerContact,
    PaymentSession,
    SessionStore,
    format_amount,
    parse_amount,
    token_hint,
)
from flask_payrelay.version import __version__
from flask_payrelay.views import create_blueprint

__all__ = ["Completion", "FlaskPayRelay"]

logger = logging.getLogger(__name__)


def _is_quart_app(app) -> bool:
    """Return ``True`` when *app* is a :class:`quart.Quart` instance."""
    try:
        from quart import Quart

        return isinstance(app, Quart)
    except ImportError:
        return False


@dataclass(frozen=True)
class Completion:
    """Outcome of a consumed payment session.

    ``email_sent`` and ``crm_updated`` report the best-effort side effects;
    a ``False`` there never means the payment itself failed.
    """

    session: PaymentSession
    charge: ChargeResult
    amount: Decimal | None
    invoice_number: str
    completed_at: datetime
    email_sent: bool = False
    crm_updated: bool = False

    def crm_fields(self) -> dict[str, Any]:
        """Payment-status fields written back onto the CRM record."""
        fields = {
            "UF_CRM_PAYMENT_STATUS": "completed",
            "UF_CRM_PAYMENT_AMOUNT": format_amount(self.amount),
            "UF_CRM_PAYMENT_DATE": self.completed_at.isoformat(),
            "UF_CRM_TRANSACTION_ID": self.charge.transaction_id,
            "UF_CRM_REFERENCE_ID": self.session.processor_reference or self.charge.transaction_id,
            "UF_CRM_PAYMENT_PROCESSOR": self.charge.provider,
            "UF_CRM_INVOICE_NUMBER": self.invoice_number,
            "UF_CRM_PAYMENT_FLOW": self.session.flow.value,
            "UF_CRM_PRODUCTS_COUNT": len(self.session.line_items),
        }
        if self.charge.auth_code:
            fields["UF_CRM_AUTH_CODE"] = self.charge.auth_code
        return fields

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "transaction_id": self.charge.transaction_id,
            "auth_code": self.charge.auth_code,
            "reference": self.session.processor_reference,
            "provider": self.charge.provider,
            "invoice_number": self.invoice_number,
            "amount": format_amount(self.amount),
            "payer_email": self.session.payer.email,
            "email_sent": self.email_sent,
            "crm_updated": self.crm_updated,
        }


class FlaskPayRelay:
    """Flask/Quart extension that issues single-use payment links for CRM records.

    Usage – application factory pattern::

        from flask import Flask
        from flask_payrelay import FlaskPayRelay

        payrelay = FlaskPayRelay()

        def create_app():
            app = Flask(__name__)
            payrelay.init_app(app)
            return app

    Usage – direct initialisation with a real provider::

        from merchants.providers.stripe import StripeProvider

        app = Flask(__name__)
        ext = FlaskPayRelay(app, provider=StripeProvider(api_key="sk_test_..."))

    Usage – with Quart (async)::

        from quart import Quart

        app = Quart(__name__)
        ext = FlaskPayRelay(app)   # async blueprint selected automatically

    Collaborators may be injected instead of configured: ``backend=`` (a
    session backend), ``crm=`` (a :class:`~flask_payrelay.crm.CrmClient`
    look-alike), ``mailer=`` (anything with ``send(to, template_id, data)``)
    and ``clock=`` (callable returning an aware UTC datetime).

    Configuration keys (set on ``app.config``):

    ``PAYRELAY_URL_PREFIX``
        URL prefix for the blueprint (default: ``"/payrelay"``).
    ``PAYRELAY_BASE_URL``
        Public base URL used in payment links and processor return URLs.
        When ``None`` (default) the current request host is used.
    ``PAYRELAY_SESSION_TTL``
        Lifetime of a payment link in seconds (default: 24 hours).
    ``PAYRELAY_DEFAULT_AMOUNT``
        Amount suggested when a session has none (default: ``"20.80"``).
    ``PAYRELAY_CURRENCY``
        ISO-4217 currency for every checkout (default: ``"USD"``).
    ``PAYRELAY_WEBHOOK_SECRET``
        HMAC-SHA256 secret used to verify processor webhooks.
        When ``None`` (default) signature verification is skipped.
    ``PAYRELAY_HEALTH_DETAILS``
        List masked per-session rows on ``/health`` (default: ``False``).
    ``PAYRELAY_WEB_PAYER_NAME`` / ``PAYRELAY_WEB_PAYER_EMAIL``
        Payer used for ``/pay-direct`` web payments.
    ``PAYRELAY_REDIS_URL``
        Keep sessions in Redis instead of process memory.
    ``PAYRELAY_CRM_WEBHOOK_URL`` / ``PAYRELAY_CRM_PRODUCT_WEBHOOK_URL`` / ``PAYRELAY_CRM_TIMEOUT``
        Bitrix24 REST webhook settings.  Without a URL CRM calls are skipped.
    ``PAYRELAY_MAIL_API_URL`` / ``PAYRELAY_MAIL_API_KEY`` / ``PAYRELAY_MAIL_SENDER``
        JSON email API settings.  Without a key emails are only logged.
    """

    def __init__(
        self,
        app=None,
        *,
        provider=None,
        providers=None,
        backend: SessionBackend | None = None,
        crm=None,
        mailer=None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._provider = provider
        self._providers: list = list(providers) if providers is not None else []
        self._backend = backend
        self._crm = crm
        self._mailer = mailer
        self._clock = clock
        self._client: merchants.Client | None = None
        # Dict of clients keyed by provider key string.
        self._clients: dict[str, merchants.Client] = {}
        self._processors: dict[str, MerchantsProcessor] = {}
        self._store: SessionStore | None = None
        self.default_amount = Decimal("20.80")
        self.currency = "USD"

        if app is not None:
            self.init_app(app)

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def init_app(
        self,
        app,
        *,
        provider=None,
        providers=None,
        backend: SessionBackend | None = None,
        crm=None,
        mailer=None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialise the extension against *app* (Flask or Quart).

        Keyword arguments override the ones given to the constructor.
        """
        if provider is not None:
            self._provider = provider
        if providers is not None:
            self._providers = list(providers)
        if backend is not None:
            self._backend = backend
        if crm is not None:
            self._crm = crm
        if mailer is not None:
            self._mailer = mailer
        if clock is not None:
            self._clock = clock

        app.config.setdefault("PAYRELAY_URL_PREFIX", "/payrelay")
        app.config.setdefault("PAYRELAY_BASE_URL", None)
        app.config.setdefault("PAYRELAY_SESSION_TTL", 24 * 60 * 60)
        app.config.setdefault("PAYRELAY_DEFAULT_AMOUNT", "20.80")
        app.config.setdefault("PAYRELAY_CURRENCY", "USD")
        app.config.setdefault("PAYRELAY_WEBHOOK_SECRET", None)
        app.config.setdefault("PAYRELAY_HEALTH_DETAILS", False)
        app.config.setdefault("PAYRELAY_WEB_PAYER_NAME", "Web Customer")
        app.config.setdefault("PAYRELAY_WEB_PAYER_EMAIL", "")
        app.config.setdefault("PAYRELAY_REDIS_URL", None)
        app.config.setdefault("PAYRELAY_CRM_WEBHOOK_URL", None)
        app.config.setdefault("PAYRELAY_CRM_PRODUCT_WEBHOOK_URL", None)
        app.config.setdefault("PAYRELAY_CRM_TIMEOUT", 10.0)
        app.config.setdefault("PAYRELAY_MAIL_API_URL", "https://api.resend.com/emails")
        app.config.setdefault("PAYRELAY_MAIL_API_KEY", None)
        app.config.setdefault("PAYRELAY_MAIL_SENDER", "Payments <payments@example.com>")

        self.currency = app.config["PAYRELAY_CURRENCY"]
        self.default_amount = parse_amount(app.config["PAYRELAY_DEFAULT_AMOUNT"])

        # Build the ordered list of providers
        all_providers: list = list(self._providers)
        if self._provider is not None:
            # Single-provider shortcut takes precedence as the default
            all_providers.insert(0, self._provider)
        if not all_providers:
            all_providers = [DummyProvider()]

        # One Client and one processor per provider, keyed by provider.key
        self._clients = {p.key: merchants.Client(provider=p) for p in all_providers}
        self._client = next(iter(self._clients.values()))
        self._processors = {
            key: MerchantsProcessor(client, currency=self.currency)
            for key, client in self._clients.items()
        }

        session_backend = self._backend
        if session_backend is None and app.config["PAYRELAY_REDIS_URL"]:
            session_backend = RedisBackend.from_url(app.config["PAYRELAY_REDIS_URL"])
        self._store = SessionStore(
            session_backend,
            ttl=timedelta(seconds=int(app.config["PAYRELAY_SESSION_TTL"])),
            clock=self._clock,
        )

        if self._crm is None and app.config["PAYRELAY_CRM_WEBHOOK_URL"]:
            self._crm = CrmClient(
                app.config["PAYRELAY_CRM_WEBHOOK_URL"],
                product_webhook_url=app.config["PAYRELAY_CRM_PRODUCT_WEBHOOK_URL"],
                timeout=float(app.config["PAYRELAY_CRM_TIMEOUT"]),
            )

        if self._mailer is None:
            if app.config["PAYRELAY_MAIL_API_KEY"]:
                self._mailer = HttpMailer(
                    app.config["PAYRELAY_MAIL_API_URL"],
                    app.config["PAYRELAY_MAIL_API_KEY"],
                    app.config["PAYRELAY_MAIL_SENDER"],
                )
            else:
                self._mailer = LogMailer()

        if _is_quart_app(app):
            from flask_payrelay.quart_views import create_async_blueprint

            blueprint = create_async_blueprint(self)
        else:
            blueprint = create_blueprint(self)

        url_prefix = app.config["PAYRELAY_URL_PREFIX"]
        app.register_blueprint(blueprint, url_prefix=url_prefix)

        app.extensions["payrelay"] = self

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    @property
    def store(self) -> SessionStore:
        """The :class:`~flask_payrelay.sessions.SessionStore` holding payment links."""
        if self._store is None:
            raise RuntimeError(
                "FlaskPayRelay extension not initialised. Call init_app(app) first."
            )
        return self._store

    @property
    def client(self) -> merchants.Client:
        """The underlying :class:`merchants.Client` instance (default provider)."""
        if self._client is None:
            raise RuntimeError(
                "FlaskPayRelay extension not initialised. Call init_app(app) first."
            )
        return self._client

    @property
    def crm(self):
        return self._crm

    @property
    def mailer(self):
        return self._mailer

    def list_providers(self) -> list[str]:
        """Return a list of registered provider key strings."""
        return list(self._clients.keys())

    def get_client(self, provider_key: str | None = None) -> merchants.Client:
        """Return the :class:`merchants.Client` for *provider_key*.

        When *provider_key* is ``None`` (or omitted) the default client
        (first registered provider) is returned.

        Raises:
            KeyError: If *provider_key* is not registered.
        """
        if provider_key is None:
            return self.client
        if provider_key not in self._clients:
            raise KeyError(f"Unknown provider: {provider_key!r}")
        return self._clients[provider_key]

    def get_processor(self, provider_key: str | None = None) -> MerchantsProcessor:
        """Return the processor adapter for *provider_key* (default when ``None``).

        Raises:
            KeyError: If *provider_key* is not registered.
        """
        client = self.get_client(provider_key)
        return self._processors[client._provider.key]

    def _processor_for(self, provider_key: str | None) -> MerchantsProcessor:
        try:
            return self.get_processor(provider_key or None)
        except KeyError:
            raise InvalidRequest(f"Unknown provider: {provider_key!r}") from None

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------

    def create_session(
        self,
        entity: EntityReference,
        payer: PayerContact,
        *,
        flow: FlowKind = FlowKind.DIRECT_LINK,
        amount: Any = None,
        line_items: Iterable[LineItem] | None = None,
        description: str | None = None,
    ) -> PaymentSession:
        """Issue a payment link for *entity*.

        Raises:
            InvalidRequest: Missing entity id or a malformed amount.
        """
        return self.store.create(
            entity,
            payer,
            flow=flow,
            requested_amount=parse_amount(amount, required=False),
            line_items=line_items or (),
            description=description,
        )

    def resolve_session(self, token: str) -> PaymentSession:
        return self.store.resolve(token)

    def revoke_session(self, token: str) -> bool:
        return self.store.revoke(token)

    def active_sessions(self) -> list[PaymentSession]:
        return self.store.active()

    def sweep_expired(self) -> int:
        return self.store.sweep_expired()

    def display_amount(self, session: PaymentSession) -> Decimal:
        """Amount shown on the payment page for *session*."""
        amount = session.amount
        return amount if amount is not None else self.default_amount

    def _charge_amount(self, session: PaymentSession, raw: Any) -> Decimal:
        amount = parse_amount(raw)
        if (
            not session.flow.amount_editable
            and session.requested_amount is not None
            and amount != session.requested_amount
        ):
            raise InvalidRequest("The amount of this payment link cannot be changed.")
        return amount

    def begin_checkout(
        self,
        token: str,
        amount: Any,
        *,
        success_url: str,
        cancel_url: str,
        provider_key: str | None = None,
    ) -> PaymentSession:
        """Open a hosted checkout for *token* and attach its reference.

        Returns the updated session; ``processor_redirect_url`` is where the
        payer goes next.

        Raises:
            SessionNotFound, SessionExpired: The link is no longer usable.
            InvalidRequest: Bad amount or unknown provider.
            UpstreamFailure: The processor rejected the checkout.
        """
        session = self.store.resolve(token)
        value = self._charge_amount(session, amount)
        processor = self._processor_for(provider_key)
        checkout = processor.start_checkout(
            session, value, success_url=success_url, cancel_url=cancel_url
        )
        return self.store.attach_processor_reference(
            token,
            checkout.reference,
            value,
            redirect_url=checkout.redirect_url,
            provider=processor.key,
        )

    def charge_session(
        self,
        token: str,
        amount: Any,
        payment_method: str,
        *,
        provider_key: str | None = None,
    ) -> Completion:
        """Confirm the processor payment for *token* and complete the session.

        *payment_method* is the payment id the processor issued for this
        session's checkout; a payment made for any other link is refused.
        The session is validated before the processor is contacted, so a
        consumed or expired link never reaches the processor.

        Raises:
            SessionNotFound, SessionExpired: The link is no longer usable.
            InvalidRequest: Bad amount, missing or foreign payment, or a
                provider other than the checkout's.
            ChargeError: The processor did not confirm the payment.
        """
        session = self.store.resolve(token)
        if not payment_method:
            raise InvalidRequest("Payment method is required.")
        self._check_payment(session, payment_method, self._charge_amount(session, amount))
        if provider_key and provider_key != session.provider:
            raise InvalidRequest(f"Unknown provider: {provider_key!r}")
        charge = self._processor_for(session.provider).charge(session.final_amount, payment_method)
        return self.complete_session(token, charge)

    def _check_payment(
        self, session: PaymentSession, payment_id: str, amount: Decimal | None = None
    ) -> None:
        if session.processor_reference is None:
            raise InvalidRequest("No checkout has been started for this payment link.")
        if payment_id != session.processor_reference:
            logger.warning(
                "Payment %s presented for session %s with reference %s",
                payment_id,
                token_hint(session.token),
                session.processor_reference,
            )
            raise InvalidRequest("Payment does not belong to this payment link.")
        if amount is not None and amount != session.final_amount:
            raise InvalidRequest("Amount does not match the checkout amount.")

    def complete_session(self, token: str, charge: ChargeResult) -> Completion:
        """Consume *token* for a confirmed *charge* and run the side effects.

        The confirmation email and CRM write-back are best effort: their
        failures are logged and reported on the returned
        :class:`Completion`, never raised.
        """
        session = self.store.consume(token)
        completed_at = self.store.now()
        completion = Completion(
            session=session,
            charge=charge,
            amount=charge.amount if charge.amount is not None else session.amount,
            invoice_number=build_invoice_number(session.entity.id, completed_at.timestamp()),
            completed_at=completed_at,
        )
        return replace(
            completion,
            email_sent=self._send_confirmation(completion),
            crm_updated=self._write_back(completion),
        )

    def complete_by_reference(self, reference: str, charge: ChargeResult) -> Completion:
        """Complete the session whose checkout carries *reference*."""
        session = self.store.find_by_reference(reference)
        return self.complete_session(session.token, charge)

    def complete_return(self, token: str, payment_id: str) -> Completion:
        """Verify *payment_id* for the payer returning on *token* and complete it.

        Raises:
            SessionNotFound, SessionExpired: The link is no longer usable.
            InvalidRequest: *payment_id* is not this session's checkout.
            ChargeError: The processor did not confirm the payment.
        """
        session = self.store.resolve(token)
        self._check_payment(session, payment_id)
        charge = self._processor_for(session.provider).charge(session.final_amount, payment_id)
        return self.complete_session(token, charge)

    def confirm_completed(self, token: str, payment_id: str) -> ChargeResult | None:
        """Receipt data for a payer returning to a link that is already paid.

        Returns ``None`` unless *token* was completed with the checkout
        *payment_id* and the processor still confirms that payment.
        """
        session = self.store.completed(token)
        if session is None or not payment_id or payment_id != session.processor_reference:
            return None
        try:
            return self._processor_for(session.provider).charge(session.final_amount, payment_id)
        except (InvalidRequest, UpstreamFailure):
            return None

    def _send_confirmation(self, completion: Completion) -> bool:
        session = completion.session
        if not session.payer.email:
            return False
        data = {
            "client_name": session.payer.name,
            "amount": format_amount(completion.amount),
            "transaction_id": completion.charge.transaction_id,
            "auth_code": completion.charge.auth_code,
            "reference_id": session.processor_reference,
            "invoice_number": completion.invoice_number,
            "products_summary": format_products_summary(session.line_items),
            "entity_type": session.entity.kind.value,
            "entity_id": session.entity.id,
        }
        try:
            self._mailer.send(session.payer.email, PAYMENT_CONFIRMATION, data)
        except Exception:  # noqa: BLE001
            logger.exception(
                "Confirmation email for session %s failed", token_hint(session.token)
            )
            return False
        return True

    def _write_back(self, completion: Completion) -> bool:
        session = completion.session
        if self._crm is None or session.entity.kind is EntityKind.WEB:
            return False
        try:
            self._crm.update_entity(session.entity, completion.crm_fields())
        except Exception:  # noqa: BLE001
            logger.exception("CRM write-back for %s failed", session.entity)
            return False
        return True

    # ------------------------------------------------------------------
    # CRM-facing helpers
    # ------------------------------------------------------------------

    def _require_crm(self):
        if self._crm is None:
            raise UpstreamFailure("CRM integration is not configured.")
        return self._crm

    def lookup_line_items(self, entity: EntityReference) -> list[LineItem]:
        """Product rows of a deal, or ``[]`` when unavailable."""
        if self._crm is None or entity.kind is not EntityKind.DEAL:
            return []
        try:
            return line_items_from_rows(self._crm.get_deal_products(entity.id))
        except UpstreamFailure:
            logger.warning("Could not load products for %s", entity)
            return []

    def crm_context(self, entity: EntityReference) -> dict[str, Any]:
        """Contact, amount and products the CRM holds for *entity*.

        Raises:
            UpstreamFailure: The CRM is not configured or a record lookup failed.
        """
        crm = self._require_crm()
        amount = None
        line_items: list[LineItem] = []
        if entity.kind is EntityKind.DEAL:
            contact = crm.get_contact_from_deal(entity.id)
            deal = crm.get_deal(entity.id) or {}
            try:
                amount = parse_amount(deal.get("OPPORTUNITY"), required=False)
            except InvalidRequest:
                # Unpriced deals carry "0.00"; the default amount applies.
                amount = None
            line_items = self.lookup_line_items(entity)
        else:
            contact = crm.get_entity(entity)
        payer = payer_from_contact(contact)
        return {
            "entity": {"kind": entity.kind.value, "id": entity.id},
            "has_valid_contact": payer is not None,
            "payer": None if payer is None else {"name": payer.name, "email": payer.email},
            "amount": format_amount(amount if amount is not None else self.default_amount),
            "line_items": [item.to_dict() for item in line_items],
            "products_summary": format_products_summary(line_items),
        }

    def email_payment_link(self, session: PaymentSession, payment_url: str) -> None:
        """Send the payment link for *session* to its payer.

        When the mail cannot be sent the session is revoked, so no
        undelivered link stays usable.

        Raises:
            InvalidRequest, UpstreamFailure: The mailer failed.
        """
        data = {
            "client_name": session.payer.name,
            "payment_link": payment_url,
            "amount": format_amount(self.display_amount(session)),
            "line_items": [item.to_dict() for item in session.line_items],
            "products_summary": format_products_summary(session.line_items),
            "invoice_number": build_invoice_number(session.entity.id),
        }
        try:
            self._mailer.send(session.payer.email, PAYMENT_LINK, data)
        except (InvalidRequest, UpstreamFailure):
            self.store.revoke(session.token)
            raise
