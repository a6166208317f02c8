"""Flask app with Flask-Admin to review and revoke payment links.

Requires the admin extra::

    pip install "flask-payrelay[admin]"

Run with::

    python examples/admin_app.py

Then open http://localhost:5000/admin/payrelay_sessions/ to see active links.
Issue one first with ``POST /payrelay/sessions`` (see basic_app.py).
"""

from flask import Flask
from flask_admin import Admin
from flask_payrelay import FlaskPayRelay
from flask_payrelay.contrib.admin import register_admin_views

app = Flask(__name__)
app.config["SECRET_KEY"] = "change-me-in-production"
app.config["PAYRELAY_URL_PREFIX"] = "/payrelay"

ext = FlaskPayRelay(app)

admin = Admin(app, name="Payment Admin")
register_admin_views(admin, ext)

if __name__ == "__main__":
    app.run(debug=True)
