"""Bitrix24 CRM client over REST webhooks.

Only the calls the relay needs are wrapped: reading deals, contacts and deal
product rows, and writing payment-status fields back.  Every HTTP or API error
surfaces as :class:`~flask_payrelay.exceptions.UpstreamFailure`.

Example::

    crm = CrmClient("https://example.bitrix24.com/rest/1/abcdef")
    deal = crm.get_deal("42")
    crm.update_entity(EntityReference(EntityKind.DEAL, "42"), {"UF_CRM_PAYMENT_STATUS": "completed"})
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable

import httpx

from flask_payrelay.exceptions import UpstreamFailure
from flask_payrelay.sessions import EntityKind, EntityReference, LineItem, PayerContact

logger = logging.getLogger(__name__)

_UPDATE_METHODS = {
    EntityKind.DEAL: "crm.deal.update",
    EntityKind.CONTACT: "crm.contact.update",
}


class CrmClient:
    """Thin Bitrix24 REST client.

    Args:
        webhook_url: Inbound webhook base URL, e.g.
            ``https://example.bitrix24.com/rest/1/<secret>``.
        product_webhook_url: Separate webhook for product rows; defaults to
            *webhook_url*.
        timeout: Per-request timeout in seconds.
        transport: Optional :class:`httpx.BaseTransport` (tests pass a
            :class:`httpx.MockTransport`).
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        product_webhook_url: str | None = None,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url.rstrip("/")
        self.product_webhook_url = (product_webhook_url or webhook_url).rstrip("/")
        self._http = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._http.close()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_deal(self, deal_id: str) -> dict[str, Any] | None:
        return self._call(self.webhook_url, "crm.deal.get", params={"id": deal_id})

    def get_contact(self, contact_id: str) -> dict[str, Any] | None:
        return self._call(self.webhook_url, "crm.contact.get", params={"id": contact_id})

    def get_contact_from_deal(self, deal_id: str) -> dict[str, Any] | None:
        """Return the contact linked to a deal, or ``None`` when it has none."""
        deal = self.get_deal(deal_id)
        contact_id = str((deal or {}).get("CONTACT_ID") or "0")
        if contact_id == "0":
            logger.info("Deal %s has no associated contact", deal_id)
            return None
        return self.get_contact(contact_id)

    def get_deal_products(self, deal_id: str) -> list[dict[str, Any]]:
        rows = self._call(self.product_webhook_url, "crm.deal.productrows.get", params={"id": deal_id})
        return list(rows or [])

    def get_entity(self, entity: EntityReference) -> dict[str, Any] | None:
        if entity.kind is EntityKind.DEAL:
            return self.get_deal(entity.id)
        if entity.kind is EntityKind.CONTACT:
            return self.get_contact(entity.id)
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def update_entity(self, entity: EntityReference, fields: dict[str, Any]) -> None:
        """Write *fields* onto the CRM record behind *entity*.

        Web payments have no CRM record; the call is a no-op for them.
        """
        method = _UPDATE_METHODS.get(entity.kind)
        if method is None:
            return
        self._call(self.webhook_url, method, json={"id": entity.id, "fields": fields})
        logger.info("CRM %s %s updated", entity.kind.value, entity.id)

    # ------------------------------------------------------------------

    def _call(self, base_url: str, method: str, *, params=None, json=None):
        url = f"{base_url}/{method}"
        try:
            if json is None:
                response = self._http.get(url, params=params)
            else:
                response = self._http.post(url, json=json)
            response.raise_for_status()
            body = response.json()
        except httpx.HTTPStatusError as exc:
            detail = _error_description(exc.response) or str(exc)
            logger.error("CRM call %s failed: %s", method, detail)
            raise UpstreamFailure(f"CRM call {method} failed: {detail}") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("CRM call %s failed: %s", method, exc)
            raise UpstreamFailure(f"CRM call {method} failed: {exc}") from exc

        if "error" in body:
            detail = body.get("error_description") or body["error"]
            raise UpstreamFailure(f"CRM call {method} failed: {detail}")
        return body.get("result")


def _error_description(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("error_description") or body.get("error")
    return None


# ----------------------------------------------------------------------
# Record mapping
# ----------------------------------------------------------------------


def _first_value(multifield: Any) -> str:
    if isinstance(multifield, list) and multifield:
        return str(multifield[0].get("VALUE") or "")
    return ""


def payer_from_contact(contact: dict[str, Any] | None) -> PayerContact | None:
    """Map a Bitrix24 contact record to a :class:`PayerContact`."""
    if not contact:
        return None
    name = f"{contact.get('NAME') or ''} {contact.get('LAST_NAME') or ''}".strip()
    return PayerContact(name=name, email=_first_value(contact.get("EMAIL")))


def line_items_from_rows(rows: Iterable[dict[str, Any]] | None) -> list[LineItem]:
    """Map Bitrix24 product rows (or already-normalised dicts) to line items."""
    items = []
    for row in rows or []:
        if "PRODUCT_NAME" in row or "PRICE" in row or "QUANTITY" in row:
            try:
                quantity = Decimal(str(row.get("QUANTITY") or 1))
                price = Decimal(str(row.get("PRICE") or 0))
            except InvalidOperation:
                logger.warning("Skipping product row with invalid numbers: %r", row)
                continue
            items.append(LineItem(str(row.get("PRODUCT_NAME") or "Product"), quantity, price))
        else:
            items.append(LineItem.from_dict(row))
    return items


def format_products_summary(items: Iterable[LineItem]) -> str:
    """One-line summary of line items for email subjects and descriptions."""
    items = list(items)
    if not items:
        return "Services"
    if len(items) == 1:
        return items[0].name or "Product"
    names = [item.name for item in items if item.name and item.name.strip()]
    if not names:
        return "Multiple products"
    if len(names) <= 3:
        return ", ".join(names)
    return f"{names[0]} and {len(names) - 1} more products"
