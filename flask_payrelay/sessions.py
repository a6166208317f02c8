"""Token-gated payment sessions.

A :class:`PaymentSession` is created when the CRM asks for a payment link,
resolved when the payer opens it, and consumed exactly once when the processor
confirms the charge.  :class:`SessionStore` owns that lifecycle::

    store = SessionStore()
    session = store.create(
        EntityReference(EntityKind.DEAL, "42"),
        PayerContact("Ada Lovelace", "ada@example.com"),
        flow=FlowKind.DIRECT_LINK,
        requested_amount=Decimal("20.80"),
    )
    store.resolve(session.token)
    store.attach_processor_reference(session.token, "REF123", Decimal("20.80"))
    store.consume(session.token)   # -> snapshot with consumed=True
    store.consume(session.token)   # -> SessionAlreadyConsumed

Sessions are immutable values.  The store replaces them on every transition,
so nothing outside the store can change ``processor_reference``,
``final_amount`` or ``consumed``.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from flask_payrelay.exceptions import (
    InvalidRequest,
    SessionAlreadyConsumed,
    SessionExpired,
    SessionNotFound,
)

if TYPE_CHECKING:
    from flask_payrelay.backends import SessionBackend

logger = logging.getLogger(__name__)

#: Default lifetime of a payment link.
DEFAULT_TTL = timedelta(hours=24)

#: Random bytes per token (256 bits of entropy).
TOKEN_BYTES = 32

_CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    """Return a new unguessable bearer token (64 hex characters)."""
    return secrets.token_hex(TOKEN_BYTES)


def token_hint(token: str) -> str:
    """Shortened token safe to write to logs and status pages."""
    return f"{token[:10]}..." if token else ""


def parse_amount(raw: Any, *, required: bool = True) -> Decimal | None:
    """Parse *raw* into a positive two-decimal :class:`~decimal.Decimal`.

    Empty values return ``None`` when *required* is false.

    Raises:
        InvalidRequest: If the value is missing (and required), not a number,
            or not greater than zero.
    """
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if required:
            raise InvalidRequest("Amount is required.")
        return None
    if isinstance(raw, bool):
        raise InvalidRequest(f"Invalid amount {raw!r}.")
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        raise InvalidRequest(f"Invalid amount {raw!r}.") from None
    if not value.is_finite() or value <= 0:
        raise InvalidRequest("Invalid amount. Must be greater than 0.")
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal | None) -> str | None:
    return None if value is None else f"{value:.2f}"


class FlowKind(str, Enum):
    """How a payment session was initiated."""

    DIRECT_LINK = "direct_link"
    EMAIL = "email"
    WEB_DIRECT = "web_direct"

    @property
    def amount_editable(self) -> bool:
        """Whether the payer may change the amount on the payment page."""
        return self is not FlowKind.WEB_DIRECT

    @property
    def auto_redirect(self) -> bool:
        """Whether the payment page sends the payer straight to the processor."""
        return self is FlowKind.WEB_DIRECT

    @classmethod
    def parse(cls, raw: Any, default: "FlowKind | None" = None) -> "FlowKind":
        if raw in (None, "") and default is not None:
            return default
        try:
            return cls(raw)
        except ValueError:
            raise InvalidRequest(f"Unknown flow kind {raw!r}.") from None


class EntityKind(str, Enum):
    CONTACT = "contact"
    DEAL = "deal"
    WEB = "web"


@dataclass(frozen=True)
class EntityReference:
    """The CRM record a payment belongs to."""

    kind: EntityKind
    id: str

    @classmethod
    def build(cls, kind: Any, entity_id: Any) -> "EntityReference":
        try:
            entity_kind = EntityKind(str(kind).lower())
        except ValueError:
            raise InvalidRequest(f"Unknown entity kind {kind!r}.") from None
        return cls(entity_kind, "" if entity_id is None else str(entity_id).strip())

    def __str__(self) -> str:
        return f"{self.kind.value}-{self.id}"


@dataclass(frozen=True)
class PayerContact:
    name: str = ""
    email: str = ""


@dataclass(frozen=True)
class LineItem:
    """Informational product row copied from the CRM."""

    name: str
    quantity: Decimal = Decimal("1")
    unit_price: Decimal = Decimal("0")

    @property
    def total(self) -> Decimal:
        return self.quantity * self.unit_price

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LineItem":
        try:
            quantity = Decimal(str(data.get("quantity", 1) or 1))
            unit_price = Decimal(str(data.get("unit_price", data.get("price", 0)) or 0))
        except (InvalidOperation, ValueError):
            raise InvalidRequest(f"Invalid line item {data!r}.") from None
        return cls(name=str(data.get("name") or "Product"), quantity=quantity, unit_price=unit_price)

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "quantity": str(self.quantity),
            "unit_price": f"{self.unit_price:.2f}",
            "total": f"{self.total:.2f}",
        }


@dataclass(frozen=True)
class PaymentSession:
    """Snapshot of one payment link.

    Attributes:
        token: Opaque bearer token, the primary key.
        entity: CRM record the payment is tied to.
        payer: Contact snapshot taken at creation time.
        flow: How the session originated.
        created_at: Creation time (UTC).
        expires_at: ``created_at`` plus the store TTL.
        requested_amount: Suggested amount; advisory for editable flows.
        line_items: Product rows, informational only.
        description: Free text for web payments.
        processor_reference: Processor-side id of the current checkout.
        processor_redirect_url: Hosted payment page of the current checkout.
        provider: Key of the processor used for the current checkout.
        final_amount: Amount locked in when the checkout was started.
        consumed: ``True`` once the payment completed.
    """

    token: str
    entity: EntityReference
    payer: PayerContact
    flow: FlowKind
    created_at: datetime
    expires_at: datetime
    requested_amount: Decimal | None = None
    line_items: tuple[LineItem, ...] = ()
    description: str | None = None
    processor_reference: str | None = None
    processor_redirect_url: str | None = None
    provider: str | None = None
    final_amount: Decimal | None = None
    consumed: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @property
    def amount(self) -> Decimal | None:
        """The authoritative amount when set, otherwise the requested one."""
        return self.final_amount if self.final_amount is not None else self.requested_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "token": self.token,
            "entity": {"kind": self.entity.kind.value, "id": self.entity.id},
            "payer": {"name": self.payer.name, "email": self.payer.email},
            "flow": self.flow.value,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "requested_amount": format_amount(self.requested_amount),
            "line_items": [item.to_dict() for item in self.line_items],
            "description": self.description,
            "processor_reference": self.processor_reference,
            "processor_redirect_url": self.processor_redirect_url,
            "provider": self.provider,
            "final_amount": format_amount(self.final_amount),
            "consumed": self.consumed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PaymentSession":
        requested = data.get("requested_amount")
        final = data.get("final_amount")
        return cls(
            token=data["token"],
            entity=EntityReference(EntityKind(data["entity"]["kind"]), data["entity"]["id"]),
            payer=PayerContact(**data.get("payer", {})),
            flow=FlowKind(data["flow"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            requested_amount=Decimal(requested) if requested is not None else None,
            line_items=tuple(LineItem.from_dict(item) for item in data.get("line_items", [])),
            description=data.get("description"),
            processor_reference=data.get("processor_reference"),
            processor_redirect_url=data.get("processor_redirect_url"),
            provider=data.get("provider"),
            final_amount=Decimal(final) if final is not None else None,
            consumed=bool(data.get("consumed", False)),
        )


class SessionStore:
    """Creates, validates and retires :class:`PaymentSession` records.

    Args:
        backend: Where sessions live.  Defaults to a process-local
            :class:`~flask_payrelay.backends.MemoryBackend`.
        ttl: Lifetime of every session (24 hours by default).
        clock: Callable returning the current aware UTC datetime.  Tests
            inject a controllable clock here.

    All check-and-set paths run under one re-entrant lock.  :meth:`consume`
    additionally takes an atomic claim from the backend, so two racing
    consumes cannot both succeed even when several processes share a
    :class:`~flask_payrelay.backends.RedisBackend`.  Callers
    must not perform network I/O through the store; processor, CRM and mail
    calls happen before or after a store call, never inside it.

    A consumed session stays in the backend, flagged, until it expires.  It is
    invisible to :meth:`resolve` but lets a replayed :meth:`consume` report
    :class:`~flask_payrelay.exceptions.SessionAlreadyConsumed`.
    """

    def __init__(
        self,
        backend: "SessionBackend | None" = None,
        *,
        ttl: timedelta = DEFAULT_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if backend is None:
            from flask_payrelay.backends import MemoryBackend

            backend = MemoryBackend()
        self._backend = backend
        self._ttl = ttl
        self._clock = clock or utcnow
        self._lock = threading.RLock()

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    @property
    def backend(self) -> "SessionBackend":
        return self._backend

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(
        self,
        entity: EntityReference,
        payer: PayerContact,
        *,
        flow: FlowKind,
        requested_amount: Decimal | None = None,
        line_items: Iterable[LineItem] = (),
        description: str | None = None,
    ) -> PaymentSession:
        """Issue a new payment session and return it.

        Raises:
            InvalidRequest: If *entity* has no id.
        """
        if entity is None or not str(entity.id or "").strip():
            raise InvalidRequest("Entity ID not found.")

        now = self._clock()
        with self._lock:
            token = generate_token()
            while self._backend.get(token) is not None:
                token = generate_token()
            session = PaymentSession(
                token=token,
                entity=entity,
                payer=payer,
                flow=flow,
                created_at=now,
                expires_at=now + self._ttl,
                requested_amount=requested_amount,
                line_items=tuple(line_items),
                description=description,
            )
            self._backend.set(session, self._ttl)

        logger.info(
            "Payment session %s created for %s (flow=%s, items=%d)",
            token_hint(token),
            entity,
            flow.value,
            len(session.line_items),
        )
        return session

    def resolve(self, token: str) -> PaymentSession:
        """Return the live session for *token*.

        Raises:
            SessionNotFound: Unknown or already consumed token.
            SessionExpired: The session expired; it is removed first.
        """
        with self._lock:
            session = self._live(token)
            if self._is_consumed(session):
                raise SessionNotFound()
            return session

    def attach_processor_reference(
        self,
        token: str,
        reference: str,
        final_amount: Decimal,
        *,
        redirect_url: str | None = None,
        provider: str | None = None,
    ) -> PaymentSession:
        """Record the processor checkout started for *token*.

        Calling it again replaces the previous reference; a payer may retry
        the checkout before it succeeds.
        """
        with self._lock:
            session = self._live(token)
            if self._is_consumed(session):
                raise SessionNotFound()
            updated = replace(
                session,
                processor_reference=reference,
                processor_redirect_url=redirect_url,
                provider=provider,
                final_amount=final_amount,
            )
            self._backend.set(updated, self._remaining(updated))

        logger.info(
            "Payment session %s attached to processor reference %s (amount=%s)",
            token_hint(token),
            reference,
            format_amount(final_amount),
        )
        return updated

    def consume(self, token: str) -> PaymentSession:
        """Mark *token* as successfully paid and return the final snapshot.

        Raises:
            SessionNotFound: Unknown token.
            SessionExpired: The session expired before completion.
            SessionAlreadyConsumed: The session was completed before.
        """
        with self._lock:
            session = self._live(token)
            if session.consumed or not self._backend.claim(token, self._remaining(session)):
                logger.warning("Replay of consumed payment session %s rejected", token_hint(token))
                raise SessionAlreadyConsumed()
            consumed = replace(session, consumed=True)
            self._backend.set(consumed, self._remaining(consumed))

        logger.info("Payment session %s consumed", token_hint(token))
        return consumed

    def revoke(self, token: str) -> bool:
        """Retire a live session early.  Returns ``True`` if one was removed."""
        with self._lock:
            session = self._backend.get(token) if token else None
            if session is None or self._is_consumed(session):
                return False
            self._backend.delete(token)
        logger.info("Payment session %s revoked", token_hint(token))
        return True

    # ------------------------------------------------------------------
    # Queries and maintenance
    # ------------------------------------------------------------------

    def find_by_reference(self, reference: str) -> PaymentSession:
        """Return the live session whose checkout has *reference*.

        Raises:
            SessionNotFound: No live, unconsumed session carries *reference*.
        """
        if reference:
            for session in self.active():
                if session.processor_reference == reference:
                    return session
        raise SessionNotFound()

    def completed(self, token: str) -> PaymentSession | None:
        """Return the consumed record for *token*, or ``None``.

        Only used to recognise a payer coming back after a webhook already
        completed their payment; the record is never shown to them.
        """
        with self._lock:
            session = self._backend.get(token) if token else None
            if session is None or session.is_expired(self._clock()):
                return None
            return session if self._is_consumed(session) else None

    def active(self) -> list[PaymentSession]:
        """Return every live, unconsumed session, evicting expired ones."""
        now = self._clock()
        result = []
        with self._lock:
            for token in self._backend.tokens():
                session = self._backend.get(token)
                if session is None:
                    continue
                if session.is_expired(now):
                    self._backend.delete(token)
                    continue
                if not self._is_consumed(session):
                    result.append(session)
        return sorted(result, key=lambda s: s.created_at)

    def sweep_expired(self) -> int:
        """Remove all expired sessions and return how many were dropped."""
        now = self._clock()
        removed = 0
        with self._lock:
            for token in self._backend.tokens():
                session = self._backend.get(token)
                if session is not None and session.is_expired(now):
                    self._backend.delete(token)
                    removed += 1
        if removed:
            logger.info("Swept %d expired payment session(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    def _live(self, token: str) -> PaymentSession:
        session = self._backend.get(token) if token else None
        if session is None:
            raise SessionNotFound()
        if session.is_expired(self._clock()):
            self._backend.delete(token)
            logger.info("Payment session %s expired", token_hint(token))
            raise SessionExpired()
        return session

    def _is_consumed(self, session: PaymentSession) -> bool:
        # The backend claim is authoritative when workers share a backend.
        return session.consumed or self._backend.is_claimed(session.token)

    def _remaining(self, session: PaymentSession) -> timedelta:
        return session.expires_at - self._clock()
