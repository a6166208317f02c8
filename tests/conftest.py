"""Shared pytest fixtures for flask-payrelay tests."""

import json
from datetime import datetime, timedelta, timezone

import httpx
import merchants
import pytest
from flask import Flask
from merchants.providers.dummy import DummyProvider

from flask_payrelay import FlaskPayRelay
from flask_payrelay.crm import CrmClient
from flask_payrelay.exceptions import UpstreamFailure

CRM_URL = "https://crm.example.com/rest/1/secret"
CRM_PRODUCT_URL = "https://crm.example.com/rest/1/products"


class FakeClock:
    """Controllable replacement for ``datetime.now(timezone.utc)``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingMailer:
    """Mailer that keeps every message instead of sending it."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[tuple[str, str, dict]] = []

    def send(self, to, template_id, data):
        if self.fail:
            raise UpstreamFailure("Email delivery failed: mail API down")
        self.sent.append((to, template_id, data))


class BitrixStub:
    """``httpx.MockTransport`` handler answering Bitrix24 REST calls."""

    def __init__(self) -> None:
        self.deals = {
            "42": {"ID": "42", "TITLE": "Website", "CONTACT_ID": "7", "OPPORTUNITY": "150.00"},
            "43": {"ID": "43", "TITLE": "Orphan", "CONTACT_ID": "0", "OPPORTUNITY": ""},
            "44": {"ID": "44", "TITLE": "Unpriced", "CONTACT_ID": "7", "OPPORTUNITY": "0.00"},
        }
        self.contacts = {
            "7": {
                "ID": "7",
                "NAME": "Ada",
                "LAST_NAME": "Lovelace",
                "EMAIL": [{"VALUE": "ada@example.com", "VALUE_TYPE": "WORK"}],
            },
        }
        self.products = {
            "42": [
                {"PRODUCT_NAME": "Consulting", "QUANTITY": 2, "PRICE": "50.00"},
                {"PRODUCT_NAME": "Support", "QUANTITY": 1, "PRICE": "50.00"},
            ],
        }
        self.requests: list[httpx.Request] = []
        self.updates: list[tuple[str, dict]] = []
        self.fail_updates = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.url.path.rsplit("/", 1)[-1]

        if method.endswith(".update"):
            if self.fail_updates:
                return httpx.Response(500, json={"error": "INTERNAL", "error_description": "Portal is down"})
            self.updates.append((method, json.loads(request.content)))
            return httpx.Response(200, json={"result": True})

        record_id = request.url.params.get("id")
        if method == "crm.deal.productrows.get":
            return httpx.Response(200, json={"result": self.products.get(record_id, [])})
        if method == "crm.deal.get":
            record = self.deals.get(record_id)
        elif method == "crm.contact.get":
            record = self.contacts.get(record_id)
        else:
            return httpx.Response(404, json={"error": "ERROR_METHOD_NOT_FOUND"})

        if record is None:
            return httpx.Response(400, json={"error": "", "error_description": "Not found"})
        return httpx.Response(200, json={"result": record})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def bitrix():
    return BitrixStub()


@pytest.fixture
def crm(bitrix):
    client = CrmClient(
        CRM_URL,
        product_webhook_url=CRM_PRODUCT_URL,
        transport=httpx.MockTransport(bitrix),
    )
    yield client
    client.close()


@pytest.fixture
def app(clock, mailer, crm):
    """Flask app whose processor confirms every payment."""
    application = Flask(__name__)
    application.config["TESTING"] = True
    application.config["SECRET_KEY"] = "test-secret"
    application.config["PAYRELAY_WEBHOOK_SECRET"] = None

    FlaskPayRelay(
        application,
        provider=DummyProvider(always_state=merchants.PaymentState.SUCCEEDED),
        crm=crm,
        mailer=mailer,
        clock=clock,
    )

    yield application


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def ext(app):
    """The FlaskPayRelay extension instance."""
    return app.extensions["payrelay"]
