"""Tests for the Bitrix24 CRM client and record mapping."""

from decimal import Decimal

import httpx
import pytest

from flask_payrelay.crm import (
    CrmClient,
    format_products_summary,
    line_items_from_rows,
    payer_from_contact,
)
from flask_payrelay.exceptions import UpstreamFailure
from flask_payrelay.sessions import EntityKind, EntityReference, LineItem, PayerContact

from conftest import CRM_PRODUCT_URL, CRM_URL


def test_get_deal(crm, bitrix):
    deal = crm.get_deal("42")
    assert deal["OPPORTUNITY"] == "150.00"
    request = bitrix.requests[-1]
    assert str(request.url) == f"{CRM_URL}/crm.deal.get?id=42"


def test_get_contact_from_deal(crm):
    contact = crm.get_contact_from_deal("42")
    assert contact["NAME"] == "Ada"


def test_get_contact_from_deal_without_contact(crm, bitrix):
    assert crm.get_contact_from_deal("43") is None
    assert [r.url.path.rsplit("/", 1)[-1] for r in bitrix.requests] == ["crm.deal.get"]


def test_get_deal_products_uses_product_webhook(crm, bitrix):
    rows = crm.get_deal_products("42")
    assert len(rows) == 2
    assert str(bitrix.requests[-1].url).startswith(f"{CRM_PRODUCT_URL}/crm.deal.productrows.get")


def test_get_entity_dispatches_on_kind(crm):
    assert crm.get_entity(EntityReference(EntityKind.CONTACT, "7"))["LAST_NAME"] == "Lovelace"
    assert crm.get_entity(EntityReference(EntityKind.DEAL, "42"))["ID"] == "42"
    assert crm.get_entity(EntityReference(EntityKind.WEB, "WEB-1")) is None


def test_missing_record_raises_upstream_failure(crm):
    with pytest.raises(UpstreamFailure, match="Not found"):
        crm.get_deal("999")


def test_network_error_raises_upstream_failure():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = CrmClient(CRM_URL, transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamFailure, match="crm.contact.get"):
        client.get_contact("7")


def test_api_error_in_body_raises_upstream_failure():
    def handler(request):
        return httpx.Response(200, json={"error": "QUERY_LIMIT_EXCEEDED", "error_description": "Too many requests"})

    client = CrmClient(CRM_URL, transport=httpx.MockTransport(handler))
    with pytest.raises(UpstreamFailure, match="Too many requests"):
        client.get_deal("42")


def test_update_deal(crm, bitrix):
    crm.update_entity(EntityReference(EntityKind.DEAL, "42"), {"UF_CRM_PAYMENT_STATUS": "completed"})
    assert bitrix.updates == [
        ("crm.deal.update", {"id": "42", "fields": {"UF_CRM_PAYMENT_STATUS": "completed"}}),
    ]


def test_update_contact(crm, bitrix):
    crm.update_entity(EntityReference(EntityKind.CONTACT, "7"), {"UF_CRM_PAYMENT_STATUS": "completed"})
    assert bitrix.updates[0][0] == "crm.contact.update"


def test_update_web_entity_is_noop(crm, bitrix):
    crm.update_entity(EntityReference(EntityKind.WEB, "WEB-1"), {"UF_CRM_PAYMENT_STATUS": "completed"})
    assert bitrix.requests == []


# ---------------------------------------------------------------------------
# Record mapping
# ---------------------------------------------------------------------------


def test_payer_from_contact(bitrix):
    assert payer_from_contact(bitrix.contacts["7"]) == PayerContact("Ada Lovelace", "ada@example.com")
    assert payer_from_contact({"NAME": "Solo"}) == PayerContact("Solo", "")
    assert payer_from_contact(None) is None


def test_line_items_from_bitrix_rows(bitrix):
    items = line_items_from_rows(bitrix.products["42"])
    assert items[0] == LineItem("Consulting", Decimal("2"), Decimal("50.00"))
    assert items[0].total == Decimal("100.00")


def test_line_items_from_normalised_dicts():
    items = line_items_from_rows([{"name": "Hosting", "quantity": "3", "price": "9.99"}])
    assert items == [LineItem("Hosting", Decimal("3"), Decimal("9.99"))]


def test_line_items_skip_invalid_rows():
    assert line_items_from_rows([{"PRODUCT_NAME": "Bad", "PRICE": "abc"}]) == []


@pytest.mark.parametrize(
    "names, expected",
    [
        ([], "Services"),
        (["Consulting"], "Consulting"),
        ([""], "Product"),
        (["", " "], "Multiple products"),
        (["A", "B", "C"], "A, B, C"),
        (["A", "B", "C", "D"], "A and 3 more products"),
    ],
)
def test_format_products_summary(names, expected):
    assert format_products_summary([LineItem(name) for name in names]) == expected
