"""Outgoing email for payment links and confirmations.

Two mailers share one interface, ``send(to, template_id, data)``:

* :class:`HttpMailer` renders the template and posts it to a JSON email API
  (Resend-compatible: ``{"from", "to", "subject", "html"}`` with a bearer key).
* :class:`LogMailer` only logs what would have been sent.  It is used when no
  ``PAYRELAY_MAIL_API_KEY`` is configured.

Templates live in ``flask_payrelay/templates/payrelay/email/<template_id>.html``.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from jinja2 import Environment, PackageLoader, select_autoescape

from flask_payrelay.exceptions import InvalidRequest, UpstreamFailure

logger = logging.getLogger(__name__)

PAYMENT_LINK = "payment_link"
PAYMENT_CONFIRMATION = "payment_confirmation"

_SUBJECTS = {
    PAYMENT_LINK: "Payment Invoice - {{ products_summary or 'Services' }}",
    PAYMENT_CONFIRMATION: "Payment Confirmation - {{ transaction_id }}",
}

_env = Environment(
    loader=PackageLoader("flask_payrelay", "templates"),
    autoescape=select_autoescape(["html"]),
)


def render_email(template_id: str, data: dict[str, Any]) -> tuple[str, str]:
    """Return ``(subject, html)`` for *template_id* rendered with *data*."""
    if template_id not in _SUBJECTS:
        raise InvalidRequest(f"Unknown email template {template_id!r}.")
    subject = _env.from_string(_SUBJECTS[template_id]).render(**data)
    html = _env.get_template(f"payrelay/email/{template_id}.html").render(**data)
    return subject, html


class LogMailer:
    """Mailer that renders and logs messages without sending them."""

    def send(self, to: str, template_id: str, data: dict[str, Any]) -> None:
        subject, _ = render_email(template_id, data)
        logger.info("Email not sent (no mail API configured): to=%s subject=%r", to, subject)


class HttpMailer:
    """Send email through an HTTP email API.

    Args:
        api_url: Endpoint accepting a JSON message.
        api_key: Bearer token for the API.
        sender: ``From`` header, e.g. ``"Payments <payments@example.com>"``.
        timeout: Request timeout in seconds.
        transport: Optional :class:`httpx.BaseTransport` for tests.
    """

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.api_url = api_url
        self.sender = sender
        self._http = httpx.Client(
            timeout=timeout,
            transport=transport,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def send(self, to: str, template_id: str, data: dict[str, Any]) -> None:
        """Render and send one message.

        Raises:
            InvalidRequest: *to* is empty or the template is unknown.
            UpstreamFailure: The email API call failed.
        """
        if not to:
            raise InvalidRequest("Recipient email is required.")
        subject, html = render_email(template_id, data)
        payload = {"from": self.sender, "to": [to], "subject": subject, "html": html}
        try:
            response = self._http.post(self.api_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Failed to send %s email to %s: %s", template_id, to, exc)
            raise UpstreamFailure(f"Email delivery failed: {exc}") from exc
        logger.info("Email sent to %s | Subject: %s", to, subject)
