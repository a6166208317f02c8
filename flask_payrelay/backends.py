"""Storage backends for :class:`~flask_payrelay.sessions.SessionStore`.

The store needs ``get``, ``set``, ``delete`` and ``tokens``, plus ``claim``:
an atomic first-writer-wins marker taken when a session is consumed.  The default
:class:`MemoryBackend` keeps sessions in a process-local dict and loses them on
restart.  :class:`RedisBackend` keeps them in Redis so several workers can
share payment links; its claim is a ``SET NX`` key, so a payment link is
completed once across all of them::

    import redis
    from flask_payrelay.backends import RedisBackend

    ext = FlaskPayRelay(app, backend=RedisBackend(redis.from_url(url, decode_responses=True)))

or set ``PAYRELAY_REDIS_URL`` and let :meth:`FlaskPayRelay.init_app` build it.
"""

from __future__ import annotations

import json
import math
from datetime import timedelta
from typing import Any, Protocol

from flask_payrelay.sessions import PaymentSession

_CLAIM_SUFFIX = ":claimed"


class SessionBackend(Protocol):
    def get(self, token: str) -> PaymentSession | None: ...

    def set(self, session: PaymentSession, ttl: timedelta) -> None: ...

    def delete(self, token: str) -> bool: ...

    def tokens(self) -> list[str]: ...

    def claim(self, token: str, ttl: timedelta) -> bool: ...

    def is_claimed(self, token: str) -> bool: ...


class MemoryBackend:
    """Process-local dict keyed by token.  Expiry is left to the store."""

    def __init__(self) -> None:
        self._sessions: dict[str, PaymentSession] = {}
        self._claimed: set[str] = set()

    def get(self, token: str) -> PaymentSession | None:
        return self._sessions.get(token)

    def set(self, session: PaymentSession, ttl: timedelta) -> None:
        self._sessions[session.token] = session

    def delete(self, token: str) -> bool:
        self._claimed.discard(token)
        return self._sessions.pop(token, None) is not None

    def tokens(self) -> list[str]:
        return list(self._sessions)

    def claim(self, token: str, ttl: timedelta) -> bool:
        if token in self._claimed:
            return False
        self._claimed.add(token)
        return True

    def is_claimed(self, token: str) -> bool:
        return token in self._claimed

    def __len__(self) -> int:
        return len(self._sessions)


class RedisBackend:
    """Sessions serialised as JSON under ``<prefix><token>`` with a Redis TTL.

    Args:
        client: A ``redis.Redis`` instance created with
            ``decode_responses=True``.
        key_prefix: Namespace for the keys.

    Redis drops keys once their TTL passes; the store still performs its own
    expiry check so behaviour matches :class:`MemoryBackend` exactly.
    """

    def __init__(self, client: Any, *, key_prefix: str = "payrelay:session:") -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisBackend":
        try:
            import redis
        except ImportError as exc:  # pragma: no cover
            raise ImportError(
                "redis is required for flask_payrelay.backends.RedisBackend. "
                "Install it with: pip install 'flask-payrelay[redis]'"
            ) from exc
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, token: str) -> str:
        return f"{self._prefix}{token}"

    def get(self, token: str) -> PaymentSession | None:
        raw = self._client.get(self._key(token))
        if raw is None:
            return None
        return PaymentSession.from_dict(json.loads(raw))

    def set(self, session: PaymentSession, ttl: timedelta) -> None:
        seconds = max(1, math.ceil(ttl.total_seconds()))
        self._client.setex(self._key(session.token), seconds, json.dumps(session.to_dict()))

    def _claim_key(self, token: str) -> str:
        return f"{self._prefix}{token}{_CLAIM_SUFFIX}"

    def delete(self, token: str) -> bool:
        removed = self._client.delete(self._key(token))
        self._client.delete(self._claim_key(token))
        return bool(removed)

    def tokens(self) -> list[str]:
        offset = len(self._prefix)
        return [
            key[offset:]
            for key in self._client.scan_iter(match=f"{self._prefix}*")
            if not key.endswith(_CLAIM_SUFFIX)
        ]

    def claim(self, token: str, ttl: timedelta) -> bool:
        seconds = max(1, math.ceil(ttl.total_seconds()))
        return bool(self._client.set(self._claim_key(token), "1", nx=True, ex=seconds))

    def is_claimed(self, token: str) -> bool:
        return bool(self._client.exists(self._claim_key(token)))
