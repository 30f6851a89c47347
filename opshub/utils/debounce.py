"""Keyed debouncing of writes."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Hashable

from flask import current_app, has_app_context

from opshub.extensions import db

logger = logging.getLogger(__name__)


class Debouncer:
    """Collapse bursts of calls per key into one callback.

    Each :meth:`call` merges its fields into the pending state for ``key``
    (later values win) and restarts that key's timer. When the timer fires,
    ``callback(key, fields)`` runs on the timer thread. A delay of zero runs
    the callback synchronously inside :meth:`call`.
    """

    def __init__(
        self,
        delay_seconds: float,
        callback: Callable[[Hashable, dict[str, Any]], Any],
        *,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.delay_seconds = max(0.0, float(delay_seconds))
        self._callback = callback
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._pending: dict[Hashable, dict[str, Any]] = {}
        self._timers: dict[Hashable, threading.Timer] = {}

    def call(self, key: Hashable, fields: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            merged = dict(self._pending.get(key, {}))
            merged.update(fields)
            self._pending[key] = merged

            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()

            if self.delay_seconds > 0:
                timer = self._timer_factory(self.delay_seconds, self._fire, args=(key,))
                timer.daemon = True
                self._timers[key] = timer
                timer.start()

        if self.delay_seconds == 0:
            self._fire(key)
        return dict(merged)

    def pending(self, key: Hashable) -> dict[str, Any] | None:
        with self._lock:
            fields = self._pending.get(key)
            return dict(fields) if fields is not None else None

    def cancel(self, key: Hashable) -> bool:
        with self._lock:
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            return self._pending.pop(key, None) is not None

    def cancel_matching(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every pending key for which ``predicate(key)`` is true."""

        with self._lock:
            keys = [key for key in self._pending if predicate(key)]
            for key in keys:
                timer = self._timers.pop(key, None)
                if timer is not None:
                    timer.cancel()
                del self._pending[key]
        return len(keys)

    def flush(self, key: Hashable | None = None) -> int:
        """Run pending callbacks now; returns how many ran."""

        with self._lock:
            keys = [key] if key is not None else list(self._pending)
            for pending_key in keys:
                timer = self._timers.pop(pending_key, None)
                if timer is not None:
                    timer.cancel()

        return sum(1 for pending_key in keys if self._fire(pending_key))

    def _fire(self, key: Hashable) -> bool:
        with self._lock:
            self._timers.pop(key, None)
            fields = self._pending.pop(key, None)
        if fields is None:
            return False
        try:
            self._callback(key, fields)
        except Exception:
            logger.exception("Debounced write for %s failed", key)
        return True


def app_bound(app, func: Callable[..., Any]) -> Callable[..., Any]:
    """Wrap ``func`` so it runs inside ``app``'s application context.

    Calls made while that app's context is already active run in place, so
    synchronous writes share the caller's database session.
    """

    def wrapper(*args, **kwargs):
        if has_app_context() and current_app._get_current_object() is app:
            return func(*args, **kwargs)
        with app.app_context():
            try:
                return func(*args, **kwargs)
            finally:
                db.session.remove()

    return wrapper
