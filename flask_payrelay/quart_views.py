"""Async blueprint for Quart applications.

This module mirrors :mod:`flask_payrelay.views` but uses ``async def``
view functions and awaits Quart's coroutine-based request helpers
(``await request.get_json()``, ``await request.get_data()``,
``await request.form``).  Store operations never await, so a session
transition cannot interleave with another request on the event loop.

It is selected automatically by :meth:`~flask_payrelay.FlaskPayRelay.init_app`
when the application is a :class:`quart.Quart` instance.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from flask_payrelay.exceptions import InvalidRequest, PayRelayError, SessionNotFound
from flask_payrelay.sessions import FlowKind
from flask_payrelay.views import (
    checkout_body,
    created_body,
    error_body,
    error_page,
    external_url,
    handle_event,
    health_body,
    logger,
    pay_page,
    placement_entity,
    required,
    session_from_payload,
    session_from_placement,
    session_from_web,
    success_page,
    verify_webhook,
    wants_page,
)

if TYPE_CHECKING:
    from flask_payrelay import FlaskPayRelay


def create_async_blueprint(ext: "FlaskPayRelay"):
    """Return a Quart Blueprint pre-configured with the extension instance."""
    try:
        from quart import Blueprint, current_app, jsonify, redirect, render_template, request, url_for
    except ImportError as exc:  # pragma: no cover
        raise ImportError(
            "quart is required for flask_payrelay.quart_views. "
            "Install it with: pip install 'flask-payrelay[quart]'"
        ) from exc

    bp = Blueprint("payrelay", __name__, template_folder="templates")

    def _url(endpoint: str, **values) -> str:
        return external_url(current_app.config, url_for, endpoint, **values)

    async def _data():
        json_data = await request.get_json(silent=True)
        if json_data:
            return json_data
        return await request.form

    @bp.errorhandler(PayRelayError)
    async def handle_error(exc: PayRelayError):
        if exc.status_code >= 500:
            logger.warning("%s on %s: %s", exc.code, request.path, exc.message)
        if wants_page(request.endpoint, request.is_json):
            return await render_template("payrelay/error.html", **error_page(exc)), exc.status_code
        return jsonify(error_body(exc)), exc.status_code

    # ------------------------------------------------------------------
    # Session creation
    # ------------------------------------------------------------------

    @bp.route("/sessions", methods=["POST"])
    async def create_session():
        """Issue a payment link for a CRM record."""
        session = session_from_payload(ext, await _data())
        return jsonify(created_body(session, _url("payrelay.pay", token=session.token))), 201

    @bp.route("/crm/webhook", methods=["POST"])
    async def crm_webhook():
        session = session_from_placement(ext, await _data())
        return jsonify(created_body(session, _url("payrelay.pay", token=session.token))), 201

    @bp.route("/crm/widget", methods=["POST"])
    async def crm_widget():
        context = ext.crm_context(placement_entity(await _data()))
        return jsonify({"success": True, **context})

    @bp.route("/send-email", methods=["POST"])
    async def send_email():
        """Create an ``email`` session and mail its link to the payer."""
        session = session_from_payload(ext, await _data(), flow=FlowKind.EMAIL)
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
    async def pay(token: str):
        session = ext.resolve_session(token)
        if session.flow.auto_redirect and session.processor_redirect_url:
            return redirect(session.processor_redirect_url)
        return await render_template(
            "payrelay/pay.html", **pay_page(ext, session, url_for("payrelay.checkout"))
        )

    @bp.route("/pay-direct")
    async def pay_direct():
        session = session_from_web(ext, request.args, current_app.config)
        ext.begin_checkout(
            session.token,
            session.requested_amount,
            success_url=_url("payrelay.payment_return", token=session.token),
            cancel_url=_url("payrelay.cancel", token=session.token),
        )
        return redirect(url_for("payrelay.pay", token=session.token))

    @bp.route("/return/<token>")
    async def payment_return(token: str):
        payment_id = required(request.args, "payment_id")
        try:
            completion = ext.complete_return(token, payment_id)
        except SessionNotFound:
            charge = ext.confirm_completed(token, payment_id)
            if charge is None:
                raise
            return await render_template("payrelay/success.html", **success_page(charge=charge))
        return await render_template("payrelay/success.html", **success_page(completion))

    @bp.route("/cancel")
    async def cancel():
        token = request.args.get("token", "")
        retry_url = url_for("payrelay.pay", token=token) if token else None
        return await render_template("payrelay/cancelled.html", retry_url=retry_url)

    # ------------------------------------------------------------------
    # Checkout / charge
    # ------------------------------------------------------------------

    @bp.route("/checkout", methods=["POST"])
    async def checkout():
        data = await _data()
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
    async def charge():
        data = await _data()
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
    async def webhook():
        """Receive processor events; succeeded payments complete their session."""
        payload: bytes = await request.get_data()
        headers: dict[str, str] = dict(request.headers)
        verify_webhook(current_app.config.get("PAYRELAY_WEBHOOK_SECRET"), payload, headers)
        return jsonify(handle_event(ext, request.args.get("provider"), payload, headers))

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @bp.route("/providers")
    async def providers():
        return jsonify({"providers": ext.list_providers()})

    @bp.route("/health")
    async def health():
        return jsonify(health_body(ext, current_app.config["PAYRELAY_HEALTH_DETAILS"]))

    return bp
