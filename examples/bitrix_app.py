"""Flask app wired to a Bitrix24 portal, a JSON email API and Redis.

Run with::

    export BITRIX_WEBHOOK_URL=https://example.bitrix24.com/rest/1/abc123
    export MAIL_API_KEY=re_...
    python examples/bitrix_app.py

Point the Bitrix24 link action at ``/payrelay/crm/webhook`` and the detail
tab widget at ``/payrelay/crm/widget``.
"""

import logging
import os

from flask import Flask
from flask_payrelay import FlaskPayRelay

logging.basicConfig(level=logging.INFO)

app = Flask(__name__)
app.config["PAYRELAY_BASE_URL"] = os.environ.get("PUBLIC_URL", "http://localhost:5000")
app.config["PAYRELAY_CRM_WEBHOOK_URL"] = os.environ["BITRIX_WEBHOOK_URL"]
app.config["PAYRELAY_CRM_PRODUCT_WEBHOOK_URL"] = os.environ.get("BITRIX_PRODUCT_WEBHOOK_URL")
app.config["PAYRELAY_MAIL_API_KEY"] = os.environ.get("MAIL_API_KEY")
app.config["PAYRELAY_MAIL_SENDER"] = "Payments <payments@example.com>"
app.config["PAYRELAY_REDIS_URL"] = os.environ.get("REDIS_URL")
app.config["PAYRELAY_WEBHOOK_SECRET"] = os.environ.get("PROCESSOR_WEBHOOK_SECRET")

ext = FlaskPayRelay(app)

if __name__ == "__main__":
    app.run(debug=True)
