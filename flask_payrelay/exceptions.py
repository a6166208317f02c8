"""Exceptions raised by flask-payrelay.

Every error carries the HTTP status and machine-readable ``code`` that the
blueprints use when translating it into a JSON body or an error page.
"""

from __future__ import annotations


class PayRelayError(Exception):
    """Base class for all flask-payrelay errors."""

    status_code: int = 400
    code: str = "error"
    default_message: str = "The request could not be processed."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


class InvalidRequest(PayRelayError):
    """Malformed or missing required fields."""

    status_code = 400
    code = "invalid_request"
    default_message = "Invalid request."


class SessionNotFound(PayRelayError):
    """The token does not name a live payment session."""

    status_code = 404
    code = "not_found"
    default_message = "Payment link not found."


class SessionExpired(PayRelayError):
    """The payment session outlived its TTL."""

    status_code = 410
    code = "expired"
    default_message = "Payment link has expired."


class SessionAlreadyConsumed(PayRelayError):
    """The payment session was already completed once."""

    status_code = 409
    code = "already_consumed"
    default_message = "Payment link has already been used."


class UpstreamFailure(PayRelayError):
    """A CRM, processor or mailer call failed.

    The message is the upstream one; it is never retried here.
    """

    status_code = 502
    code = "upstream_failure"
    default_message = "Upstream service call failed."


class ChargeError(UpstreamFailure):
    """The processor did not confirm the payment."""

    status_code = 402
    code = "charge_failed"
    default_message = "The payment was not completed."
