import time

import pytest

from cpr.db import SqliteStore
from cpr.objects import Resource
from cpr.store import Store


class RecordingStore(Store):
    """Wraps a real store, records successful writes and runs hooks before them.

    Hooks receive the wrapped store and the key, so they can mutate the object
    "concurrently" just before our write lands.
    """

    def __init__(self, inner):
        self.inner = inner
        self.writes = []
        self.before_create = []
        self.before_patch = []

    def writes_for(self, kind):
        return [w for w in self.writes if w[1].kind == kind]

    def get(self, key):
        return self.inner.get(key)

    def list(self, kind, namespace=None):
        return self.inner.list(kind, namespace=namespace)

    def create(self, obj):
        if self.before_create:
            self.before_create.pop(0)(self.inner, obj.key)
        stored = self.inner.create(obj)
        self.writes.append(("create", obj.key, stored.spec))
        return stored

    def update(self, obj):
        stored = self.inner.update(obj)
        self.writes.append(("update", obj.key, stored.spec))
        return stored

    def patch(self, key, patch, resource_version=None):
        if self.before_patch:
            self.before_patch.pop(0)(self.inner, key)
        stored = self.inner.patch(key, patch, resource_version=resource_version)
        self.writes.append(("patch", key, patch))
        return stored

    def patch_status(self, key, patch, resource_version=None):
        stored = self.inner.patch_status(key, patch, resource_version=resource_version)
        self.writes.append(("patch_status", key, patch))
        return stored

    def delete(self, key, resource_version=None):
        self.inner.delete(key, resource_version=resource_version)
        self.writes.append(("delete", key, None))

    def watch(self, kind, predicate=None, namespace=None):
        return self.inner.watch(kind, predicate=predicate, namespace=namespace)

    def record_event(self, key, event_type, reason, message):
        self.inner.record_event(key, event_type, reason, message)

    def list_events(self, limit=100, key=None):
        return self.inner.list_events(limit=limit, key=key)


@pytest.fixture
def store(tmp_path):
    s = SqliteStore(str(tmp_path / "cpr.db"))
    yield s
    s.close()


@pytest.fixture
def recording(store):
    return RecordingStore(store)


@pytest.fixture
def make_parent(store):
    def _make(name="cp", spec=None, kind="OpenStackControlPlane", namespace="default"):
        return store.create(Resource(kind=kind, namespace=namespace, name=name, spec=spec or {}))

    return _make


@pytest.fixture
def wait_for():
    def _wait(predicate, timeout=5.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()

    return _wait
