"""Flask-Admin views for the payment links held by flask-payrelay.

Install the optional dependency before using this module::

    pip install "flask-payrelay[admin]"

Example::

    from flask import Flask
    from flask_admin import Admin
    from flask_payrelay import FlaskPayRelay
    from flask_payrelay.contrib.admin import register_admin_views

    app = Flask(__name__)
    ext = FlaskPayRelay(app)

    admin = Admin(app, name="Payments")
    register_admin_views(admin, ext)
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any

try:
    from flask_admin.actions import action
    from flask_admin.model import BaseModelView
except ImportError as exc:  # pragma: no cover
    raise ImportError(
        "flask-admin is required for flask_payrelay.contrib.admin. "
        "Install it with: pip install 'flask-payrelay[admin]'"
    ) from exc

from flask_payrelay.sessions import PaymentSession, format_amount

if TYPE_CHECKING:
    from flask_payrelay import FlaskPayRelay


class SessionRow:
    """Read-only projection of a :class:`PaymentSession` for the list page.

    The full token is the primary key (admins need it to revoke a link);
    everything else is display text.
    """

    def __init__(self, session: PaymentSession) -> None:
        self.token = session.token
        self.entity = str(session.entity)
        self.payer = session.payer.email or session.payer.name
        self.flow = session.flow.value
        self.amount = format_amount(session.amount) or ""
        self.amount_value = session.amount
        self.reference = session.processor_reference or ""
        self.provider = session.provider or ""
        self.created_at = session.created_at.strftime("%Y-%m-%d %H:%M")
        self.expires_at = session.expires_at.strftime("%Y-%m-%d %H:%M")


def _sort_key(row: SessionRow, field: str):
    if field == "amount":
        return row.amount_value if row.amount_value is not None else Decimal("0")
    return str(getattr(row, field, ""))


class SessionView(BaseModelView):
    """Flask-Admin view listing live payment links.

    Rows come from :meth:`FlaskPayRelay.active_sessions`, so expired and
    completed links never show up.  Links cannot be created or edited here;
    revoking them is done through the bulk actions.

    Args:
        ext: Initialised :class:`~flask_payrelay.FlaskPayRelay` extension instance.
        name: Display name shown in the admin navigation bar.
        endpoint: Internal Flask endpoint prefix (must be unique).
        category: Optional admin category/group name.
    """

    can_create = False
    can_edit = False
    can_delete = False

    column_list = ["token", "entity", "payer", "flow", "amount", "reference", "expires_at"]
    column_searchable_list = ["entity", "payer", "reference"]
    column_sortable_list = ["entity", "flow", "amount", "expires_at"]
    column_labels = {
        "token": "Token",
        "entity": "CRM Record",
        "payer": "Payer",
        "flow": "Flow",
        "amount": "Amount",
        "reference": "Processor Ref",
        "expires_at": "Expires (UTC)",
    }
    column_formatters = {
        "token": lambda view, context, model, name: model.token[:10] + "…",
    }

    def __init__(
        self,
        ext: "FlaskPayRelay",
        name: str = "Payment Links",
        endpoint: str = "payment_links",
        category: str | None = None,
        **kwargs: Any,
    ) -> None:
        self._ext = ext
        super().__init__(
            model=SessionRow,
            name=name,
            endpoint=endpoint,
            category=category,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Required BaseModelView abstract methods
    # ------------------------------------------------------------------

    def scaffold_list_columns(self) -> list[str]:
        return list(self.column_list)

    def scaffold_sortable_columns(self) -> dict[str, str]:
        return {name: name for name in self.column_sortable_list}

    def scaffold_form(self):
        from wtforms import Form as WTForm

        return WTForm

    def scaffold_list_form(self, widget=None, validators=None):
        from wtforms import Form as WTForm

        return WTForm

    def init_search(self) -> bool:
        return bool(self.column_searchable_list)

    def get_pk_value(self, model) -> str | None:
        return getattr(model, "token", None)

    def get_list(self, page, sort_field, sort_desc, search, filters, page_size=None):
        rows = [SessionRow(s) for s in self._ext.active_sessions()]

        if search:
            needle = search.lower()
            rows = [
                r
                for r in rows
                if any(needle in str(getattr(r, col)).lower() for col in self.column_searchable_list)
            ]

        if sort_field:
            rows = sorted(rows, key=lambda r: _sort_key(r, sort_field), reverse=bool(sort_desc))

        count = len(rows)

        if page_size is None:
            page_size = self.page_size
        if page is not None and page_size:
            rows = rows[page * page_size : (page + 1) * page_size]

        return count, rows

    def get_one(self, id: str):
        for session in self._ext.active_sessions():
            if session.token == id:
                return SessionRow(session)
        return None

    def create_model(self, form):
        return False

    def update_model(self, form, model):
        return False

    def delete_model(self, model):
        return False

    def get_empty_list_message(self) -> str:
        return "No active payment links."

    # ------------------------------------------------------------------
    # Bulk actions
    # ------------------------------------------------------------------

    @action(
        "revoke",
        "Revoke",
        "Revoke the selected payment links? Payers will no longer be able to use them.",
    )
    def action_revoke(self, ids: list[str]) -> None:
        from flask import flash

        count = sum(1 for token in ids if self._ext.revoke_session(token))
        flash(f"{count} payment link(s) revoked.", "success")

    @action("sweep", "Purge expired", "Remove every expired payment link now?")
    def action_sweep(self, ids: list[str]) -> None:
        from flask import flash

        flash(f"{self._ext.sweep_expired()} expired payment link(s) removed.", "success")


def register_admin_views(admin, ext: "FlaskPayRelay", *, name: str = "Payment Links") -> None:
    """Register :class:`SessionView` into *admin* under ``category="PayRelay"``.

    Args:
        admin: A :class:`flask_admin.Admin` instance.
        ext: An initialised :class:`~flask_payrelay.FlaskPayRelay` instance.
        name: Display name for the menu item.
    """
    admin.add_view(
        SessionView(
            ext,
            name=name,
            endpoint="payrelay_sessions",
            category="PayRelay",
        )
    )
