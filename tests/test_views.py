"""Tests for the payrelay blueprint routes."""

import json
from decimal import Decimal

import pytest

from flask_payrelay.mailer import PAYMENT_LINK

SESSION_BODY = {
    "entity": {"kind": "deal", "id": "42"},
    "payer": {"name": "Ada Lovelace", "email": "ada@example.com"},
    "amount": "20.80",
    "line_items": [{"name": "Consulting", "quantity": "1", "unit_price": "20.80"}],
}


def _create(client, **overrides):
    resp = client.post("/payrelay/sessions", json={**SESSION_BODY, **overrides})
    assert resp.status_code == 201
    return resp.get_json()["token"]


def _checkout(client, token, amount="20.80"):
    resp = client.post("/payrelay/checkout", json={"token": token, "amount": amount})
    assert resp.status_code == 200
    return resp.get_json()


# ---------------------------------------------------------------------------
# POST /sessions
# ---------------------------------------------------------------------------


def test_create_session(client, ext):
    resp = client.post("/payrelay/sessions", json=SESSION_BODY)
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["success"] is True
    assert data["flow"] == "direct_link"
    assert data["payment_url"] == f"http://localhost/payrelay/pay/{data['token']}"
    assert data["expires_at"] == "2026-01-16T12:00:00+00:00"

    session = ext.resolve_session(data["token"])
    assert session.requested_amount == Decimal("20.80")
    assert session.line_items[0].name == "Consulting"


def test_create_session_uses_base_url(app, client):
    app.config["PAYRELAY_BASE_URL"] = "https://pay.example.com/"
    data = client.post("/payrelay/sessions", json=SESSION_BODY).get_json()
    assert data["payment_url"] == f"https://pay.example.com/payrelay/pay/{data['token']}"


def test_create_session_missing_entity_id(client, ext):
    resp = client.post("/payrelay/sessions", json={**SESSION_BODY, "entity": {"kind": "deal", "id": ""}})
    assert resp.status_code == 400
    assert resp.get_json() == {
        "success": False,
        "error": "invalid_request",
        "message": "Entity ID not found.",
    }
    assert ext.active_sessions() == []


@pytest.mark.parametrize(
    "overrides",
    [{"amount": "0"}, {"amount": "ten"}, {"flow": "fax"}, {"entity": {"kind": "lead", "id": "1"}}],
)
def test_create_session_invalid_input(client, overrides):
    resp = client.post("/payrelay/sessions", json={**SESSION_BODY, **overrides})
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_request"


def test_create_session_from_form(client):
    resp = client.post(
        "/payrelay/sessions",
        data={"entity": json.dumps({"kind": "contact", "id": "7"}), "payer": json.dumps({"name": "Ada"})},
    )
    assert resp.status_code == 201


# ---------------------------------------------------------------------------
# GET /pay/<token>
# ---------------------------------------------------------------------------


def test_pay_page(client):
    token = _create(client)
    resp = client.get(f"/payrelay/pay/{token}")
    assert resp.status_code == 200
    assert b"Ada Lovelace" in resp.data
    assert b"Consulting" in resp.data
    assert b'value="20.80"' in resp.data
    assert b'type="number"' in resp.data


def test_pay_page_unknown_token(client):
    resp = client.get("/payrelay/pay/does-not-exist")
    assert resp.status_code == 404
    assert b"Invalid or expired link" in resp.data
    assert b"request a new payment link" in resp.data


def test_pay_page_expired_then_gone(client, clock):
    token = _create(client)
    clock.advance(hours=25)

    resp = client.get(f"/payrelay/pay/{token}")
    assert resp.status_code == 410
    assert b"Expired link" in resp.data

    assert client.get(f"/payrelay/pay/{token}").status_code == 404


# ---------------------------------------------------------------------------
# POST /checkout
# ---------------------------------------------------------------------------


def test_checkout_json(client, ext):
    token = _create(client)
    data = _checkout(client, token, amount="30")

    assert data["reference"].startswith("dummy_sess_")
    assert "dummy-pay.example.com" in data["redirect_url"]
    assert data["amount"] == "30.00"
    assert data["flow"] == "direct_link"
    assert ext.resolve_session(token).final_amount == Decimal("30.00")


def test_checkout_form_redirects_to_processor(client):
    token = _create(client)
    resp = client.post("/payrelay/checkout", data={"token": token, "amount": "20.80"})
    assert resp.status_code == 302
    assert "dummy-pay.example.com" in resp.headers["Location"]


def test_checkout_rejects_non_positive_amount(client):
    token = _create(client)
    resp = client.post("/payrelay/checkout", json={"token": token, "amount": "0"})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Invalid amount. Must be greater than 0."


def test_checkout_requires_token(client):
    resp = client.post("/payrelay/checkout", json={"amount": "5"})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "token is required."


def test_checkout_form_unknown_token_renders_page(client):
    resp = client.post("/payrelay/checkout", data={"token": "nope", "amount": "5"})
    assert resp.status_code == 404
    assert b"Invalid or expired link" in resp.data


def test_checkout_expired_json(client, clock):
    token = _create(client)
    clock.advance(days=2)
    resp = client.post("/payrelay/checkout", json={"token": token, "amount": "5"})
    assert resp.status_code == 410
    assert resp.get_json()["error"] == "expired"


# ---------------------------------------------------------------------------
# POST /charge
# ---------------------------------------------------------------------------


def test_charge(client, mailer, bitrix):
    token = _create(client)
    reference = _checkout(client, token)["reference"]
    resp = client.post(
        "/payrelay/charge",
        json={"token": token, "amount": "20.80", "payment_method": reference},
    )
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["transaction_id"] == reference
    assert data["amount"] == "20.80"
    assert data["payer_email"] == "ada@example.com"
    assert data["email_sent"] is True
    assert data["crm_updated"] is True
    assert data["invoice_number"].startswith("EX042XL")

    replay = client.post(
        "/payrelay/charge",
        json={"token": token, "amount": "20.80", "payment_method": reference},
    )
    assert replay.status_code == 404
    assert replay.get_json()["error"] == "not_found"


def test_charge_requires_payment_method(client):
    token = _create(client)
    resp = client.post("/payrelay/charge", json={"token": token, "amount": "20.80"})
    assert resp.status_code == 400


def test_charge_rejects_inflated_amount(client, ext, mailer):
    token = _create(client, amount="1.00")
    reference = _checkout(client, token, amount="1.00")["reference"]
    resp = client.post(
        "/payrelay/charge",
        json={"token": token, "amount": "5000", "payment_method": reference},
    )
    assert resp.status_code == 400
    assert resp.get_json()["error"] == "invalid_request"
    assert ext.resolve_session(token).consumed is False
    assert mailer.sent == []


def test_charge_rejects_payment_of_another_link(client, ext):
    paid = _create(client, amount="1.00")
    reference = _checkout(client, paid, amount="1.00")["reference"]
    other = _create(client, amount="900.00")
    _checkout(client, other, amount="900.00")

    resp = client.post(
        "/payrelay/charge",
        json={"token": other, "amount": "900.00", "payment_method": reference},
    )
    assert resp.status_code == 400
    assert ext.resolve_session(other).consumed is False


def test_charge_succeeds_when_side_effects_fail(client, mailer, bitrix):
    mailer.fail = True
    bitrix.fail_updates = True
    token = _create(client)
    reference = _checkout(client, token)["reference"]
    resp = client.post(
        "/payrelay/charge",
        json={"token": token, "amount": "20.80", "payment_method": reference},
    )
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["success"] is True
    assert data["email_sent"] is False
    assert data["crm_updated"] is False


# ---------------------------------------------------------------------------
# Return / cancel pages
# ---------------------------------------------------------------------------


def test_return_completes_session(client, ext, mailer):
    token = _create(client)
    reference = _checkout(client, token)["reference"]

    resp = client.get(f"/payrelay/return/{token}?payment_id={reference}")
    assert resp.status_code == 200
    assert b"Payment successful" in resp.data
    assert b"20.80" in resp.data
    assert ext.active_sessions() == []
    assert len(mailer.sent) == 1


def test_return_after_webhook_still_shows_success(client, mailer):
    token = _create(client)
    reference = _checkout(client, token)["reference"]
    client.post(
        "/payrelay/webhook",
        data=json.dumps({"payment_id": reference, "event_type": "payment.succeeded"}),
        content_type="application/json",
    )

    resp = client.get(f"/payrelay/return/{token}?payment_id={reference}")
    assert resp.status_code == 200
    assert b"Payment successful" in resp.data
    assert len(mailer.sent) == 1


def test_return_rejects_payment_of_another_link(client, ext, mailer):
    # Only the first link reaches the processor.
    paid = _create(client, amount="1.00")
    reference = _checkout(client, paid, amount="1.00")["reference"]
    other = _create(client, entity={"kind": "deal", "id": "2"}, amount="900.00")

    resp = client.get(f"/payrelay/return/{other}?payment_id={reference}")
    assert resp.status_code == 400
    assert b"Payment successful" not in resp.data
    assert ext.resolve_session(other).consumed is False
    assert mailer.sent == []


def test_return_for_unknown_token_shows_no_receipt(client):
    token = _create(client)
    reference = _checkout(client, token)["reference"]
    client.get(f"/payrelay/return/{token}?payment_id={reference}")

    resp = client.get(f"/payrelay/return/not-a-token?payment_id={reference}")
    assert resp.status_code == 404
    assert b"Payment successful" not in resp.data


def test_return_after_completion_with_other_payment_shows_no_receipt(client):
    token = _create(client)
    reference = _checkout(client, token)["reference"]
    client.get(f"/payrelay/return/{token}?payment_id={reference}")

    other = _create(client)
    other_reference = _checkout(client, other)["reference"]
    resp = client.get(f"/payrelay/return/{token}?payment_id={other_reference}")
    assert resp.status_code == 404


def test_return_without_payment_id(client):
    token = _create(client)
    resp = client.get(f"/payrelay/return/{token}")
    assert resp.status_code == 400
    assert b"payment_id is required." in resp.data


def test_cancel_links_back_to_payment_page(client):
    resp = client.get("/payrelay/cancel?token=abc123")
    assert resp.status_code == 200
    assert b"Payment cancelled" in resp.data
    assert b"/payrelay/pay/abc123" in resp.data


# ---------------------------------------------------------------------------
# GET /pay-direct
# ---------------------------------------------------------------------------


def test_pay_direct_redirects_to_processor(client, ext):
    resp = client.get("/payrelay/pay-direct?amount=15&name=Grace&reference=INV-9&description=Gift")
    assert resp.status_code == 302
    location = resp.headers["Location"]
    assert "/payrelay/pay/" in location
    token = location.rsplit("/", 1)[-1]

    session = ext.resolve_session(token)
    assert str(session.entity) == "web-INV-9"
    assert session.payer.name == "Grace"
    assert session.final_amount == Decimal("15.00")
    assert session.description == "Gift"

    follow = client.get(f"/payrelay/pay/{token}")
    assert follow.status_code == 302
    assert "dummy-pay.example.com" in follow.headers["Location"]


def test_pay_direct_defaults(client, ext):
    resp = client.get("/payrelay/pay-direct")
    assert resp.status_code == 302
    session = ext.active_sessions()[0]
    assert session.payer.name == "Web Customer"
    assert session.requested_amount == Decimal("20.80")
    assert session.entity.id.startswith("WEB-")


def test_pay_direct_amount_is_fixed(client, ext):
    client.get("/payrelay/pay-direct?amount=15&reference=INV-9")
    token = ext.active_sessions()[0].token

    resp = client.post("/payrelay/checkout", json={"token": token, "amount": "1.00"})
    assert resp.status_code == 400
    assert "cannot be changed" in resp.get_json()["message"]


def test_pay_direct_bad_amount_renders_page(client):
    resp = client.get("/payrelay/pay-direct?amount=-1")
    assert resp.status_code == 400
    assert b"Invalid amount" in resp.data


# ---------------------------------------------------------------------------
# CRM routes
# ---------------------------------------------------------------------------


def test_crm_webhook_creates_direct_link(client, ext):
    options = {
        "ENTITY_ID": "42",
        "ENTITY_TYPE": "DEAL",
        "CONTACT_EMAIL": "ada@example.com",
        "CONTACT_NAME": "Ada Lovelace",
        "DEAL_AMOUNT": "150",
        "PRODUCTS": [{"PRODUCT_NAME": "Consulting", "QUANTITY": 3, "PRICE": "50"}],
    }
    resp = client.post("/payrelay/crm/webhook", data={"PLACEMENT_OPTIONS": json.dumps(options)})
    assert resp.status_code == 201
    session = ext.resolve_session(resp.get_json()["token"])
    assert str(session.entity) == "deal-42"
    assert session.flow.value == "direct_link"
    assert session.requested_amount == Decimal("150.00")
    assert session.line_items[0].quantity == Decimal("3")


def test_crm_webhook_requires_entity(client):
    resp = client.post("/payrelay/crm/webhook", json={"PLACEMENT_OPTIONS": {"ENTITY_TYPE": "deal"}})
    assert resp.status_code == 400
    assert resp.get_json()["message"] == "Entity ID not found."


def test_crm_webhook_malformed_options(client):
    resp = client.post("/payrelay/crm/webhook", data={"PLACEMENT_OPTIONS": "{not json"})
    assert resp.status_code == 400


def test_crm_widget_deal(client):
    resp = client.post(
        "/payrelay/crm/widget",
        data={"PLACEMENT": "CRM_DEAL_DETAIL_TAB", "PLACEMENT_OPTIONS": json.dumps({"ID": "42"})},
    )
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["has_valid_contact"] is True
    assert data["amount"] == "150.00"
    assert data["products_summary"] == "Consulting, Support"


def test_crm_widget_unpriced_deal_falls_back_to_default_amount(client):
    resp = client.post(
        "/payrelay/crm/widget",
        data={"PLACEMENT": "CRM_DEAL_DETAIL_TAB", "PLACEMENT_OPTIONS": json.dumps({"ID": "44"})},
    )
    assert resp.status_code == 200
    data = resp.get_json()
    assert data["amount"] == "20.80"
    assert data["payer"]["name"] == "Ada Lovelace"


def test_crm_widget_unknown_record(client):
    resp = client.post(
        "/payrelay/crm/widget",
        json={"PLACEMENT": "CRM_CONTACT_DETAIL_TAB", "PLACEMENT_OPTIONS": {"ID": "999"}},
    )
    assert resp.status_code == 502
    assert resp.get_json()["error"] == "upstream_failure"


def test_crm_widget_unsupported_placement(client):
    resp = client.post("/payrelay/crm/widget", json={"PLACEMENT": "CRM_LEAD_LIST_MENU"})
    assert resp.status_code == 400


# ---------------------------------------------------------------------------
# POST /send-email
# ---------------------------------------------------------------------------


def test_send_email(client, ext, mailer):
    body = {**SESSION_BODY, "line_items": []}
    resp = client.post("/payrelay/send-email", json=body)
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["flow"] == "email"

    to, template_id, mail = mailer.sent[0]
    assert to == "ada@example.com"
    assert template_id == PAYMENT_LINK
    assert mail["payment_link"] == data["payment_url"]
    # Products come from the CRM deal when the caller sends none.
    assert [item["name"] for item in mail["line_items"]] == ["Consulting", "Support"]
    assert ext.resolve_session(data["token"]).flow.value == "email"


def test_send_email_failure_revokes_link(client, ext, mailer):
    mailer.fail = True
    resp = client.post("/payrelay/send-email", json=SESSION_BODY)
    assert resp.status_code == 502
    assert resp.get_json()["error"] == "upstream_failure"
    assert ext.active_sessions() == []


def test_send_email_requires_address(client, ext):
    resp = client.post("/payrelay/send-email", json={**SESSION_BODY, "payer": {"name": "Ada"}})
    assert resp.status_code == 400
    assert ext.active_sessions() == []


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------


def test_providers(client):
    resp = client.get("/payrelay/providers")
    assert resp.status_code == 200
    assert resp.get_json() == {"providers": ["dummy"]}


def test_health_hides_session_details_by_default(client):
    token = _create(client)
    data = client.get("/payrelay/health").get_json()
    assert data == {"status": "ok", "active_sessions": 1, "providers": ["dummy"]}
    assert token[:10] not in json.dumps(data)


def test_health_details_mask_tokens(app, client):
    app.config["PAYRELAY_HEALTH_DETAILS"] = True
    token = _create(client)
    data = client.get("/payrelay/health").get_json()
    assert data["status"] == "ok"
    assert data["active_sessions"] == 1
    summary = data["sessions"][0]
    assert summary["token"] == token[:10] + "..."
    assert token not in json.dumps(data)
    assert summary["entity"] == "deal-42"
    assert summary["has_reference"] is False
