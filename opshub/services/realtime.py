"""In-process publish/subscribe channels with presence tracking.

A :class:`ChannelHub` hands out named :class:`Channel` objects (one per
design board, ``board-<id>``). Subscribers receive event dictionaries::

    {"type": "presence", "event": "join" | "leave" | "sync", "payload": {...}}
    {"type": "broadcast", "event": <name>, "payload": {...}}
    {"type": "postgres_changes", "event": "INSERT" | "UPDATE" | "DELETE",
     "payload": {"table": ..., "record": {...}}}

Events for browsers are relayed over Server-Sent Events by the design board
routes; :func:`format_sse` renders one event as an SSE frame.
"""

from __future__ import annotations

import copy
import json
import logging
import queue
import threading
from collections import deque
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping

from flask import current_app

logger = logging.getLogger(__name__)

Listener = Callable[[dict[str, Any]], None]


def board_channel_name(board_id: int | str) -> str:
    return f"board-{board_id}"


class Subscription:
    def __init__(self, channel: "Channel", listener: Listener, key: str | None):
        self.channel = channel
        self.listener = listener
        self.key = key
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.channel._remove(self)


class Channel:
    def __init__(self, name: str, hub: "ChannelHub | None" = None):
        self.name = name
        self._hub = hub
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._presence: dict[str, list[dict[str, Any]]] = {}

    def subscribe(self, listener: Listener, *, key: str | None = None) -> Subscription:
        subscription = Subscription(self, listener, key)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
            empty = not self._subscriptions and not self._presence
        if empty and self._hub is not None:
            self._hub._discard(self)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def has_subscriber(self, key: str) -> bool:
        with self._lock:
            return any(subscription.key == key for subscription in self._subscriptions)

    def is_empty(self) -> bool:
        with self._lock:
            return not self._subscriptions and not self._presence

    def presence_state(self) -> dict[str, list[dict[str, Any]]]:
        with self._lock:
            return copy.deepcopy(self._presence)

    def track(self, key: str, meta: Mapping[str, Any]) -> None:
        entry = dict(meta)
        with self._lock:
            self._presence[key] = [entry]
        self._emit("presence", "join", {"key": key, "newPresences": [dict(entry)]})
        self._emit_sync()

    def untrack(self, key: str) -> bool:
        with self._lock:
            left = self._presence.pop(key, None)
            empty = not self._subscriptions and not self._presence
        if left is None:
            return False
        self._emit("presence", "leave", {"key": key, "leftPresences": left})
        self._emit_sync()
        if empty and self._hub is not None:
            self._hub._discard(self)
        return True

    def broadcast(
        self,
        event: str,
        payload: Mapping[str, Any] | None = None,
        *,
        sender: str | None = None,
        self_delivery: bool = True,
    ) -> int:
        skip = None if self_delivery else sender
        return self._emit("broadcast", event, dict(payload or {}), skip_key=skip)

    def notify_change(self, table: str, event_type: str, record: Mapping[str, Any]) -> int:
        payload = {
            "table": table,
            "record": dict(record),
            "commit_timestamp": datetime.utcnow().isoformat() + "Z",
        }
        return self._emit("postgres_changes", event_type.upper(), payload)

    def _emit_sync(self) -> None:
        self._emit("presence", "sync", {"state": self.presence_state()})

    def _emit(
        self,
        event_type: str,
        event: str,
        payload: dict[str, Any],
        *,
        skip_key: str | None = None,
    ) -> int:
        message = {"type": event_type, "event": event, "payload": payload}
        with self._lock:
            targets = [
                subscription
                for subscription in self._subscriptions
                if skip_key is None or subscription.key != skip_key
            ]

        delivered = 0
        for subscription in targets:
            try:
                subscription.listener(copy.deepcopy(message))
            except Exception:
                logger.exception(
                    "Realtime listener failed on %s (%s/%s)", self.name, event_type, event
                )
                continue
            delivered += 1
        return delivered


class ChannelHub:
    def __init__(self):
        self._lock = threading.Lock()
        self._channels: dict[str, Channel] = {}

    def channel(self, name: str) -> Channel:
        with self._lock:
            channel = self._channels.get(name)
            if channel is None:
                channel = Channel(name, hub=self)
                self._channels[name] = channel
            return channel

    def get(self, name: str) -> Channel | None:
        with self._lock:
            return self._channels.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._channels)

    def _discard(self, channel: Channel) -> None:
        with self._lock:
            if self._channels.get(channel.name) is channel and channel.is_empty():
                del self._channels[channel.name]


def get_hub(app=None) -> ChannelHub:
    app = app or current_app
    hub = app.extensions.get("opshub_channels")
    if hub is None:
        hub = ChannelHub()
        app.extensions["opshub_channels"] = hub
    return hub


def reconcile_presence(
    state: Mapping[str, Iterable[Mapping[str, Any]]], current_key: str | None
) -> list[dict[str, Any]]:
    """Flatten a presence state into a list without the caller's own entries."""

    entries: list[dict[str, Any]] = []
    for key, metas in state.items():
        for meta in metas:
            owner = meta.get("user_id", key)
            if current_key is not None and str(owner) == str(current_key):
                continue
            entries.append(dict(meta))
    return entries


class QueueListener:
    """Listener buffering events in a bounded queue for a streaming response.

    Events arriving while the queue is full are dropped and the listener is
    marked stale. The next :meth:`get` then discards buffered presence events
    and returns ``resync()``, a fresh presence ``sync``, ahead of whatever
    else was buffered.
    """

    def __init__(self, maxsize: int = 100, *, resync: Callable[[], dict[str, Any]] | None = None):
        self.queue: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self._resync = resync
        self._stale = False
        self._backlog: deque[dict[str, Any]] = deque()

    def __call__(self, event: dict[str, Any]) -> None:
        try:
            self.queue.put_nowait(event)
        except queue.Full:
            self.dropped += 1
            self._stale = True

    def get(self, timeout: float) -> dict[str, Any] | None:
        if self._stale and self._resync is not None:
            self._stale = False
            while True:
                try:
                    event = self.queue.get_nowait()
                except queue.Empty:
                    break
                if event.get("type") != "presence":
                    self._backlog.append(event)
            logger.info("Listener fell behind by %d events; resyncing presence", self.dropped)
            return self._resync()
        if self._backlog:
            return self._backlog.popleft()
        try:
            return self.queue.get(timeout=timeout)
        except queue.Empty:
            return None


def format_sse(event: Mapping[str, Any]) -> str:
    name = event.get("type", "message")
    if event.get("type") == "presence":
        name = f"presence:{event.get('event')}"
    data = json.dumps(event, default=str)
    return f"event: {name}\ndata: {data}\n\n"
