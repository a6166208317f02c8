"""Quart async app using flask-payrelay with DummyProvider.

Requires the quart extra::

    pip install "flask-payrelay[quart]"

Run with::

    python examples/quart_app.py

Then use the same endpoints as the Flask version:

    curl -X POST http://localhost:5000/payrelay/sessions \\
         -H "Content-Type: application/json" \\
         -d '{"entity": {"kind": "contact", "id": "7"},
              "payer": {"name": "Ada", "email": "ada@example.com"}}'

    curl http://localhost:5000/payrelay/health
"""

from quart import Quart

from flask_payrelay import FlaskPayRelay

app = Quart(__name__)
app.config["PAYRELAY_URL_PREFIX"] = "/payrelay"

# FlaskPayRelay detects Quart and registers the async blueprint automatically
ext = FlaskPayRelay(app)

if __name__ == "__main__":
    app.run(debug=True)
