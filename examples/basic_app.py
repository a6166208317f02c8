"""Basic Flask app using flask-payrelay with DummyProvider.

Run with::

    python examples/basic_app.py

Then use curl:

    # Issue a payment link for deal 42
    curl -X POST http://localhost:5000/payrelay/sessions \\
         -H "Content-Type: application/json" \\
         -d '{"entity": {"kind": "deal", "id": "42"},
              "payer": {"name": "Ada Lovelace", "email": "ada@example.com"},
              "amount": "20.80"}'

    # Open the returned payment_url in a browser, or start the checkout directly
    curl -X POST http://localhost:5000/payrelay/checkout \\
         -H "Content-Type: application/json" \\
         -d '{"token": "TOKEN", "amount": "20.80"}'

    # Simulate the processor confirming the checkout (REFERENCE from above)
    curl -X POST http://localhost:5000/payrelay/webhook \\
         -H "Content-Type: application/json" \\
         -d '{"payment_id": "REFERENCE", "event_type": "payment.succeeded"}'

    # Web payment with a fixed amount
    curl -i "http://localhost:5000/payrelay/pay-direct?amount=15.00&name=Grace"

    # Active links
    curl http://localhost:5000/payrelay/health
"""

import logging

from flask import Flask
from flask_payrelay import FlaskPayRelay

logging.basicConfig(level=logging.INFO)

app = Flask(__name__)
app.config["PAYRELAY_URL_PREFIX"] = "/payrelay"

# DummyProvider is used by default, emails are only logged and the CRM is
# skipped until PAYRELAY_CRM_WEBHOOK_URL is set.
ext = FlaskPayRelay(app)

if __name__ == "__main__":
    app.run(debug=True)
