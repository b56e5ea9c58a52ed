from __future__ import annotations

import itertools
import threading
import time
from typing import Any


class Trace:
    """Ordered record of what one pipeline run did.

    Executor workers emit from their own threads, so appends are serialized and
    each event carries a sequence number reflecting emission order.
    """

    def __init__(self, task: str, session_id: str | None = None, request_id: str | None = None) -> None:
        self.task = task
        self.session_id = session_id
        self.request_id = request_id
        self._events: list[dict[str, Any]] = []
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def emit(self, name: str, payload: dict[str, Any]) -> None:
        enriched = dict(payload)
        if self.session_id:
            enriched.setdefault("session_id", self.session_id)
        if self.request_id:
            enriched.setdefault("request_id", self.request_id)
        with self._lock:
            self._events.append({"seq": next(self._seq), "event": name, "ts": time.time(), "payload": enriched})

    @property
    def events(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._events)

    def event_names(self) -> list[str]:
        return [event["event"] for event in self.events]

    def payloads(self, name: str) -> list[dict[str, Any]]:
        return [event["payload"] for event in self.events if event["event"] == name]
