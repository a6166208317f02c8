"""Blueprint with session, payment page, checkout, charge, return and webhook routes."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import merchants
from flask import Blueprint, current_app, jsonify, redirect, render_template, request, url_for

from flask_payrelay.crm import line_items_from_rows
from flask_payrelay.exceptions import (
    InvalidRequest,
    PayRelayError,
    SessionAlreadyConsumed,
    SessionExpired,
    SessionNotFound,
)
from flask_payrelay.processor import ChargeResult
from flask_payrelay.sessions import (
    EntityKind,
    EntityReference,
    FlowKind,
    LineItem,
    PayerContact,
    PaymentSession,
    format_amount,
    token_hint,
)

if TYPE_CHECKING:
    from flask_payrelay import Completion, FlaskPayRelay

logger = logging.getLogger(__name__)

#: Endpoints that answer with HTML pages instead of JSON.
PAGE_ENDPOINTS = frozenset({"payrelay.pay", "payrelay.payment_return", "payrelay.pay_direct"})

_PLACEMENTS = {
    "CRM_CONTACT_DETAIL_TAB": EntityKind.CONTACT,
    "CRM_DEAL_DETAIL_TAB": EntityKind.DEAL,
}

_ERROR_PAGES = {
    "not_found": (
        "Invalid or expired link",
        ["This payment link is not valid or has expired.", "Please request a new payment link."],
    ),
    "expired": (
        "Expired link",
        ["This payment link has expired.", "Please request a new payment link."],
    ),
    "already_consumed": (
        "Payment already completed",
        ["This payment link has already been used."],
    ),
}
_GENERIC_PAGE = (
    "Payment unavailable",
    ["We could not process this payment.", "Please try again or request a new payment link."],
)


# ---------------------------------------------------------------------------
# Request-agnostic helpers (shared with the Quart blueprint)
# ---------------------------------------------------------------------------


def error_body(exc: PayRelayError) -> dict[str, Any]:
    return {"success": False, "error": exc.code, "message": exc.message}


def error_page(exc: PayRelayError) -> dict[str, Any]:
    """Template context for ``payrelay/error.html``; never exposes internals."""
    title, lines = _ERROR_PAGES.get(exc.code, _GENERIC_PAGE)
    if exc.code == "invalid_request":
        lines = [exc.message]
    return {"title": title, "lines": lines}


def load_json_field(raw: Any, default: Any) -> Any:
    """Decode a field that may arrive as a JSON string or already decoded."""
    if raw is None or raw == "":
        return default
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except (ValueError, TypeError):
            raise InvalidRequest("Malformed JSON field.") from None
    return raw


def required(data, key: str) -> str:
    value = data.get(key)
    if value is None or str(value).strip() == "":
        raise InvalidRequest(f"{key} is required.")
    return str(value).strip()


def _line_items(raw: Any) -> list[LineItem]:
    rows = load_json_field(raw, [])
    if not isinstance(rows, list):
        raise InvalidRequest("line_items must be a list.")
    return line_items_from_rows(rows)


def session_from_payload(ext: "FlaskPayRelay", data, *, flow: FlowKind | None = None) -> PaymentSession:
    """Create a session from a ``{entity, payer, amount, line_items, flow}`` body."""
    entity = load_json_field(data.get("entity"), {})
    payer = load_json_field(data.get("payer"), {})
    if not isinstance(entity, dict) or not isinstance(payer, dict):
        raise InvalidRequest("entity and payer must be objects.")
    reference = EntityReference.build(entity.get("kind") or EntityKind.DEAL.value, entity.get("id"))
    items = _line_items(data.get("line_items"))
    if flow is FlowKind.EMAIL and not items:
        items = ext.lookup_line_items(reference)
    return ext.create_session(
        reference,
        PayerContact(name=payer.get("name") or "", email=payer.get("email") or ""),
        flow=flow or FlowKind.parse(data.get("flow"), FlowKind.DIRECT_LINK),
        amount=data.get("amount"),
        line_items=items,
        description=data.get("description") or None,
    )


def session_from_placement(ext: "FlaskPayRelay", data) -> PaymentSession:
    """Create a ``direct_link`` session from a CRM placement callback."""
    options = load_json_field(data.get("PLACEMENT_OPTIONS"), {})
    if not isinstance(options, dict):
        raise InvalidRequest("PLACEMENT_OPTIONS must be an object.")
    entity = EntityReference.build(options.get("ENTITY_TYPE") or EntityKind.DEAL.value, options.get("ENTITY_ID"))
    return ext.create_session(
        entity,
        PayerContact(name=options.get("CONTACT_NAME") or "", email=options.get("CONTACT_EMAIL") or ""),
        flow=FlowKind.DIRECT_LINK,
        amount=options.get("DEAL_AMOUNT"),
        line_items=_line_items(options.get("PRODUCTS")),
    )


def placement_entity(data) -> EntityReference:
    """Entity addressed by a CRM widget placement."""
    placement = data.get("PLACEMENT") or ""
    kind = _PLACEMENTS.get(placement)
    if kind is None:
        raise InvalidRequest(f"Unsupported placement {placement!r}.")
    options = load_json_field(data.get("PLACEMENT_OPTIONS"), {})
    if not isinstance(options, dict):
        raise InvalidRequest("PLACEMENT_OPTIONS must be an object.")
    return EntityReference.build(kind, options.get("ID"))


def session_from_web(ext: "FlaskPayRelay", args, config) -> PaymentSession:
    """Create a fixed-amount ``web_direct`` session from query parameters."""
    reference = args.get("reference") or f"WEB-{int(ext.store.now().timestamp())}"
    return ext.create_session(
        EntityReference(EntityKind.WEB, reference),
        PayerContact(
            name=args.get("name") or config["PAYRELAY_WEB_PAYER_NAME"],
            email=config["PAYRELAY_WEB_PAYER_EMAIL"] or "",
        ),
        flow=FlowKind.WEB_DIRECT,
        amount=args.get("amount") or ext.default_amount,
        description=args.get("description") or None,
    )


def created_body(session: PaymentSession, payment_url: str) -> dict[str, Any]:
    return {
        "success": True,
        "token": session.token,
        "payment_url": payment_url,
        "flow": session.flow.value,
        "expires_at": session.expires_at.isoformat(),
    }


def checkout_body(session: PaymentSession) -> dict[str, Any]:
    return {
        "success": True,
        "redirect_url": session.processor_redirect_url,
        "reference": session.processor_reference,
        "provider": session.provider,
        "amount": format_amount(session.final_amount),
        "flow": session.flow.value,
    }


def pay_page(ext: "FlaskPayRelay", session: PaymentSession, checkout_url: str) -> dict[str, Any]:
    """Template context for ``payrelay/pay.html``."""
    return {
        "session": session,
        "line_items": [item.to_dict() for item in session.line_items],
        "checkout_url": checkout_url,
        "currency": ext.currency,
        "amount": format_amount(ext.display_amount(session)),
        "editable": session.flow.amount_editable,
        "providers": ext.list_providers(),
    }


def success_page(completion: "Completion | None" = None, charge: ChargeResult | None = None) -> dict[str, Any]:
    if completion is not None:
        return {
            "amount": format_amount(completion.amount),
            "transaction_id": completion.charge.transaction_id,
            "invoice_number": completion.invoice_number,
            "email_sent": completion.email_sent,
        }
    return {
        "amount": format_amount(charge.amount) if charge else None,
        "transaction_id": charge.transaction_id if charge else None,
        "invoice_number": None,
        "email_sent": False,
    }


def health_body(ext: "FlaskPayRelay", details: bool = False) -> dict[str, Any]:
    """Liveness summary; per-session rows only when *details* is set."""
    sessions = ext.active_sessions()
    body = {
        "status": "ok",
        "active_sessions": len(sessions),
        "providers": ext.list_providers(),
    }
    if details:
        body["sessions"] = [
            {
                "token": token_hint(s.token),
                "entity": str(s.entity),
                "flow": s.flow.value,
                "amount": format_amount(s.amount),
                "has_reference": s.processor_reference is not None,
                "expires_at": s.expires_at.isoformat(),
            }
            for s in sessions
        ]
    return body


def verify_webhook(secret: str | None, payload: bytes, headers) -> None:
    """Check the HMAC signature header when a secret is configured."""
    if not secret:
        return
    try:
        merchants.verify_signature(
            payload=payload,
            secret=secret,
            signature=headers.get("X-Merchants-Signature", ""),
        )
    except merchants.WebhookVerificationError:
        raise InvalidRequest("invalid signature") from None


def handle_event(ext: "FlaskPayRelay", provider_key: str | None, payload: bytes, headers) -> dict[str, Any]:
    """Decode a processor webhook and complete the matching session on success."""
    try:
        processor = ext.get_processor(provider_key)
    except KeyError:
        raise InvalidRequest(f"Unknown provider: {provider_key!r}") from None
    try:
        event = processor.parse_event(payload, headers)
    except Exception:  # noqa: BLE001
        raise InvalidRequest("malformed payload") from None

    body = {
        "received": True,
        "event_id": event.event_id,
        "event_type": event.event_type,
        "payment_id": event.payment_id,
        "state": event.state.value,
        "completed": False,
    }
    if event.state is not merchants.PaymentState.SUCCEEDED:
        return body

    charge = ChargeResult(
        transaction_id=event.payment_id,
        provider=processor.key,
        state=event.state.value,
    )
    try:
        completion = ext.complete_by_reference(event.payment_id, charge)
    except (SessionNotFound, SessionExpired, SessionAlreadyConsumed) as exc:
        # Acknowledged anyway so the processor stops retrying.
        logger.info("Webhook for %s not applied: %s", event.payment_id, exc.code)
        return body
    body["completed"] = True
    body["invoice_number"] = completion.invoice_number
    return body


def external_url(config, build_url, endpoint: str, **values: Any) -> str:
    """Absolute URL for *endpoint*, honouring ``PAYRELAY_BASE_URL``.

    *build_url* is the framework's ``url_for``.
    """
    base = config.get("PAYRELAY_BASE_URL")
    if base:
        return base.rstrip("/") + build_url(endpoint, **values)
    return build_url(endpoint, _external=True, **values)


def wants_page(endpoint: str | None, is_json: bool) -> bool:
    if endpoint in PAGE_ENDPOINTS:
        return True
    # Form posts from the payment page.
    return endpoint == "payrelay.checkout" and not is_json


# ---------------------------------------------------------------------------
# Blueprint
# ---------------------------------------------------------------------------


def create_blueprint(ext: "FlaskPayRelay") -> Blueprint:
    """Return a Blueprint pre-configured with the extension instance."""

    bp = Blueprint("payrelay", __name__, template_folder="templates")

    def _url(endpoint: str, **values) -> str:
        return external_url(current_app.config, url_for, endpoint, **values)

    @bp.errorhandler(PayRelayError)
    def handle_error(exc: PayRelayError):
        if exc.status_code >= 500:
            logger.warning("%s on %s: %s", exc.code, request.path, exc.message)
        if wants_page(request.endpoint, request.is_json):
            return render_template("payrelay/error.html", **error_page(exc)), exc.status_code
        return jsonify(error_body(exc)), exc.status_code

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    @bp.route("/sessions", methods=["POST"])
    def create_session():
        """Issue a payment link for a CRM record.

        Accepts JSON body **or** form fields ``entity``, ``payer``,
        ``amount``, ``line_items``, ``flow`` and ``description``.
        """
        data = request.get_json(silent=True) or request.form
        session = session_from_payload(ext, data)
        return jsonify(created_body(session, _url("payrelay.pay", token=session.token))), 201

    @bp.route("/crm/webhook", methods=["POST"])
    def crm_webhook():
        """CRM link action: create a ``direct_link`` session from placement options."""
        data = request.get_json(silent=True) or request.form
        session = session_from_placement(ext, data)
        return jsonify(created_body(session, _url("payrelay.pay", token=session.token))), 201

    @bp.route("/crm/widget", methods=["POST"])
    def crm_widget():
        """Contact, amount and products for the record a CRM widget is shown on."""
        data = request.get_json(silent=True) or request.form
        context = ext.crm_context(placement_entity(data))
        return jsonify({"success": True, **context})

    @bp.route("/send-email", methods=["POST"])
    def send_email():
        """Create an ``email`` session and mail its link to the payer."""
        data = request.get_json(silent=True) or request.form
        session = session_from_payload(ext, data, flow=FlowKind.EMAIL)
        if not session.payer.email:
            ext.revoke_session(session.token)
            raise InvalidRequest("payer email is required.")
        payment_url = _url("payrelay.pay", token=session.token)
        ext.email_payment_link(session, payment_url)
        return jsonify(created_body(session, payment_url)), 201

    # ------------------------------------------------------------------
    # Payer-facing pages
    # ------------------------------------------------------------------

    @bp.route("/pay/<token>")
    def pay(token: str):
        """Payment page for *token*, or a redirect for auto-redirect flows."""
        session = ext.resolve_session(token)
        if session.flow.auto_redirect and session.processor_redirect_url:
            return redirect(session.processor_redirect_url)
        return render_template("payrelay/pay.html", **pay_page(ext, session, url_for("payrelay.checkout")))

    @bp.route("/pay-direct")
    def pay_direct():
        """Web flow: fixed-amount session with the checkout already opened."""
        session = session_from_web(ext, request.args, current_app.config)
        ext.begin_checkout(
            session.token,
            session.requested_amount,
            success_url=_url("payrelay.payment_return", token=session.token),
            cancel_url=_url("payrelay.cancel", token=session.token),
        )
        return redirect(url_for("payrelay.pay", token=session.token))

    @bp.route("/return/<token>")
    def payment_return(token: str):
        """Landing page after the processor's hosted checkout succeeded."""
        payment_id = required(request.args, "payment_id")
        try:
            completion = ext.complete_return(token, payment_id)
        except SessionNotFound:
            # A webhook may have completed the session first.
            charge = ext.confirm_completed(token, payment_id)
            if charge is None:
                raise
            return render_template("payrelay/success.html", **success_page(charge=charge))
        return render_template("payrelay/success.html", **success_page(completion))

    @bp.route("/cancel")
    def cancel():
        """Landing page after a cancelled checkout."""
        token = request.args.get("token", "")
        retry_url = url_for("payrelay.pay", token=token) if token else None
        return render_template("payrelay/cancelled.html", retry_url=retry_url)

    # ------------------------------------------------------------------
    # Checkout / charge
    # ------------------------------------------------------------------

    @bp.route("/checkout", methods=["POST"])
    def checkout():
        """Open the hosted checkout for a session.

        JSON callers get ``{redirect_url, reference, amount, flow}``; form
        posts from the payment page are redirected to the processor.
        """
        data = request.get_json(silent=True) or request.form
        token = required(data, "token")
        session = ext.begin_checkout(
            token,
            data.get("amount"),
            success_url=_url("payrelay.payment_return", token=token),
            cancel_url=_url("payrelay.cancel", token=token),
            provider_key=data.get("provider") or None,
        )
        if request.is_json:
            return jsonify(checkout_body(session))
        return redirect(session.processor_redirect_url)

    @bp.route("/charge", methods=["POST"])
    def charge():
        """Charge a payment method proof against a session and consume it."""
        data = request.get_json(silent=True) or request.form
        completion = ext.charge_session(
            required(data, "token"),
            data.get("amount"),
            required(data, "payment_method"),
            provider_key=data.get("provider") or None,
        )
        return jsonify(completion.to_dict())

    # ------------------------------------------------------------------
    # Webhook
    # ------------------------------------------------------------------

    @bp.route("/webhook", methods=["POST"])
    def webhook():
        """Receive processor events; succeeded payments complete their session.

        When ``PAYRELAY_WEBHOOK_SECRET`` is set on the app config the
        request signature is verified before processing.
        """
        payload: bytes = request.get_data()
        headers: dict[str, str] = dict(request.headers)
        verify_webhook(current_app.config.get("PAYRELAY_WEBHOOK_SECRET"), payload, headers)
        return jsonify(handle_event(ext, request.args.get("provider"), payload, headers))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @bp.route("/providers")
    def providers():
        """Return the list of registered provider keys."""
        return jsonify({"providers": ext.list_providers()})

    @bp.route("/health")
    def health():
        return jsonify(health_body(ext, current_app.config["PAYRELAY_HEALTH_DETAILS"]))

    return bp
