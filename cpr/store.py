from __future__ import annotations

import queue
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from .objects import ObjectKey, Resource

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    type: str  # ADDED|MODIFIED|DELETED
    object: Resource
    old_object: Resource | None = None

    @property
    def key(self) -> ObjectKey:
        return self.object.key


Predicate = Callable[[WatchEvent], bool]


def generation_changed(event: WatchEvent) -> bool:
    """Pass creations, deletions and spec changes; drop status/metadata-only updates."""
    if event.type != MODIFIED or event.old_object is None:
        return True
    return event.old_object.generation != event.object.generation


class Watch:
    """Stream of watch events for one kind.

    The store pushes events from its writer threads; a consumer iterates
    until ``close()`` is called.
    """

    _CLOSED = object()

    def __init__(
        self,
        kind: str,
        predicate: Predicate | None = None,
        namespace: str | None = None,
        on_close: Callable[[Watch], None] | None = None,
    ) -> None:
        self.kind = kind
        self.predicate = predicate
        self.namespace = namespace or None
        self.closed = False
        self._events: queue.Queue[Any] = queue.Queue()
        self._on_close = on_close

    def matches(self, event: WatchEvent) -> bool:
        if event.object.kind != self.kind:
            return False
        if self.namespace and event.object.namespace != self.namespace:
            return False
        return self.predicate is None or self.predicate(event)

    def push(self, event: WatchEvent) -> None:
        if not self.closed and self.matches(event):
            self._events.put(event)

    def get(self, timeout: float | None = None) -> WatchEvent | None:
        """Next event, or None on timeout or once the watch is closed."""
        try:
            item = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._CLOSED:
            # Let other readers see the sentinel too.
            self._events.put(item)
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._on_close is not None:
            self._on_close(self)
        self._events.put(self._CLOSED)

    def __iter__(self) -> Iterator[WatchEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class Store(ABC):
    """Versioned object store with optimistic concurrency and a watch primitive.

    Every write that carries a ``resource_version`` is rejected with
    ``Conflict`` if the stored object has moved on since that version was read.
    """

    @abstractmethod
    def get(self, key: ObjectKey) -> Resource: ...

    @abstractmethod
    def list(self, kind: str, namespace: str | None = None) -> list[Resource]: ...

    @abstractmethod
    def create(self, obj: Resource) -> Resource: ...

    @abstractmethod
    def update(self, obj: Resource) -> Resource: ...

    @abstractmethod
    def patch(self, key: ObjectKey, patch: dict[str, Any], resource_version: int | None = None) -> Resource: ...

    @abstractmethod
    def patch_status(self, key: ObjectKey, patch: dict[str, Any], resource_version: int | None = None) -> Resource: ...

    @abstractmethod
    def delete(self, key: ObjectKey, resource_version: int | None = None) -> None: ...

    @abstractmethod
    def watch(self, kind: str, predicate: Predicate | None = None, namespace: str | None = None) -> Watch: ...

    @abstractmethod
    def record_event(self, key: ObjectKey, event_type: str, reason: str, message: str) -> None: ...

    @abstractmethod
    def list_events(self, limit: int = 100, key: ObjectKey | None = None) -> list[dict[str, Any]]: ...
