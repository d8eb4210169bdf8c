from __future__ import annotations

import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from threading import Lock, RLock
from typing import Any, Iterator

from .errors import AlreadyExists, Conflict, Invalid, NotFound, Transient
from .objects import ObjectKey, OwnerReference, Resource, utc_now
from .patch import apply_merge_patch
from .settings import settings
from .store import ADDED, DELETED, MODIFIED, Predicate, Store, Watch, WatchEvent


def _resolve_db_path(path: str) -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (Docker creates one for a missing
    bind-mounted file), the database file is placed inside it.
    """
    if path == ":memory:":
        return path

    p = os.path.abspath(path)
    if os.path.isdir(p):
        p = os.path.join(p, "cpr.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect(path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def init_db(conn: sqlite3.Connection) -> None:
    """Create tables if they do not exist."""
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS counters (
          name TEXT PRIMARY KEY,
          value INTEGER NOT NULL
        );

        CREATE TABLE IF NOT EXISTS objects (
          uid TEXT PRIMARY KEY,
          kind TEXT NOT NULL,
          namespace TEXT NOT NULL,
          name TEXT NOT NULL,
          spec TEXT NOT NULL,
          status TEXT NOT NULL,
          labels TEXT NOT NULL,
          resource_version INTEGER NOT NULL,
          generation INTEGER NOT NULL,
          created_at TEXT NOT NULL,
          UNIQUE(kind, namespace, name)
        );

        CREATE TABLE IF NOT EXISTS owner_refs (
          child_uid TEXT NOT NULL,
          owner_uid TEXT NOT NULL,
          owner_kind TEXT NOT NULL,
          owner_name TEXT NOT NULL,
          controller INTEGER NOT NULL,
          block_owner_deletion INTEGER NOT NULL,
          position INTEGER NOT NULL,
          PRIMARY KEY(child_uid, owner_uid),
          FOREIGN KEY(child_uid) REFERENCES objects(uid) ON DELETE CASCADE
        );

        CREATE TABLE IF NOT EXISTS events (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          ts TEXT NOT NULL,
          type TEXT NOT NULL, -- Normal|Warning
          kind TEXT NOT NULL,
          namespace TEXT NOT NULL,
          name TEXT NOT NULL,
          reason TEXT NOT NULL,
          message TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_objects_kind ON objects(kind, namespace);
        CREATE INDEX IF NOT EXISTS idx_owner_refs_owner ON owner_refs(owner_uid);
        CREATE INDEX IF NOT EXISTS idx_events_object ON events(kind, namespace, name);

        INSERT OR IGNORE INTO counters (name, value) VALUES ('resource_version', 0);
        """
    )
    conn.commit()


def _dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def _validate(obj: Resource) -> None:
    if not (obj.kind and obj.namespace and obj.name):
        raise Invalid(f"kind, namespace and name are required (got {obj.key})")
    controllers = [r for r in obj.owner_references if r.controller]
    if len(controllers) > 1:
        raise Invalid(f"{obj.key} has more than one controller owner reference")
    uids = [r.uid for r in obj.owner_references]
    if len(set(uids)) != len(uids):
        raise Invalid(f"{obj.key} has duplicate owner references")


def _check_owners(conn: sqlite3.Connection, obj: Resource) -> None:
    for ref in obj.owner_references:
        row = conn.execute("SELECT kind, namespace, name FROM objects WHERE uid=?", (ref.uid,)).fetchone()
        if row is None or (row["kind"], row["name"]) != (ref.kind, ref.name):
            raise Invalid(f"{obj.key} refers to owner {ref.kind}/{ref.name} ({ref.uid}) which does not exist")
        if row["namespace"] != obj.namespace:
            raise Invalid(f"{obj.key} refers to owner {ref.kind}/{ref.name} in another namespace")


def _check_version(current: Resource, resource_version: int | None) -> None:
    if resource_version is not None and resource_version != current.resource_version:
        raise Conflict(
            f"{current.key} was modified concurrently "
            f"(have version {resource_version}, store has {current.resource_version})"
        )


class SqliteStore(Store):
    """Embedded Store backed by a single SQLite connection.

    Ownership is kept relationally in ``owner_refs``; deleting an object
    garbage-collects, in the same transaction, every dependent whose owners
    are all gone.
    """

    def __init__(self, path: str | None = None) -> None:
        self.path = path or settings.db_path
        self._lock = RLock()
        self._conn = connect(self.path)
        init_db(self._conn)
        self._watch_lock = Lock()
        self._watches: list[Watch] = []

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.OperationalError as e:
                raise Transient(f"store unavailable: {e}") from e

    # --- reads -------------------------------------------------------------

    def _owner_refs(self, conn: sqlite3.Connection, uid: str) -> list[OwnerReference]:
        rows = conn.execute(
            "SELECT * FROM owner_refs WHERE child_uid=? ORDER BY position",
            (uid,),
        ).fetchall()
        return [
            OwnerReference(
                kind=r["owner_kind"],
                name=r["owner_name"],
                uid=r["owner_uid"],
                controller=bool(r["controller"]),
                block_owner_deletion=bool(r["block_owner_deletion"]),
            )
            for r in rows
        ]

    def _row_to_resource(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Resource:
        return Resource(
            kind=row["kind"],
            namespace=row["namespace"],
            name=row["name"],
            spec=json.loads(row["spec"]),
            status=json.loads(row["status"]),
            labels=json.loads(row["labels"]),
            owner_references=self._owner_refs(conn, row["uid"]),
            uid=row["uid"],
            resource_version=row["resource_version"],
            generation=row["generation"],
            created_at=row["created_at"],
        )

    def _load(self, conn: sqlite3.Connection, key: ObjectKey) -> Resource | None:
        row = conn.execute(
            "SELECT * FROM objects WHERE kind=? AND namespace=? AND name=?",
            (key.kind, key.namespace, key.name),
        ).fetchone()
        return self._row_to_resource(conn, row) if row else None

    def _load_uid(self, conn: sqlite3.Connection, uid: str) -> Resource | None:
        row = conn.execute("SELECT * FROM objects WHERE uid=?", (uid,)).fetchone()
        return self._row_to_resource(conn, row) if row else None

    def _must_load(self, conn: sqlite3.Connection, key: ObjectKey) -> Resource:
        current = self._load(conn, key)
        if current is None:
            raise NotFound(f"{key} not found")
        return current

    def get(self, key: ObjectKey) -> Resource:
        with self._tx() as conn:
            return self._must_load(conn, key)

    def list(self, kind: str, namespace: str | None = None) -> list[Resource]:
        with self._tx() as conn:
            if namespace:
                rows = conn.execute(
                    "SELECT * FROM objects WHERE kind=? AND namespace=? ORDER BY namespace, name",
                    (kind, namespace),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM objects WHERE kind=? ORDER BY namespace, name",
                    (kind,),
                ).fetchall()
            return [self._row_to_resource(conn, r) for r in rows]

    # --- writes ------------------------------------------------------------

    def _next_version(self, conn: sqlite3.Connection) -> int:
        conn.execute("UPDATE counters SET value=value+1 WHERE name='resource_version'")
        return conn.execute("SELECT value FROM counters WHERE name='resource_version'").fetchone()[0]

    def _write_refs(self, conn: sqlite3.Connection, uid: str, refs: list[OwnerReference]) -> None:
        conn.execute("DELETE FROM owner_refs WHERE child_uid=?", (uid,))
        for pos, ref in enumerate(refs):
            conn.execute(
                """
                INSERT INTO owner_refs (child_uid, owner_uid, owner_kind, owner_name, controller, block_owner_deletion, position)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (uid, ref.uid, ref.kind, ref.name, int(ref.controller), int(ref.block_owner_deletion), pos),
            )

    def _replace(self, conn: sqlite3.Connection, current: Resource, new: Resource) -> Resource | None:
        """Persist ``new`` over ``current``; None when nothing changed."""
        if new.mutable_view() == current.mutable_view() and new.status == current.status:
            return None
        generation = current.generation + (1 if new.spec != current.spec else 0)
        conn.execute(
            """
            UPDATE objects
            SET spec=?, status=?, labels=?, resource_version=?, generation=?
            WHERE uid=?
            """,
            (
                _dumps(new.spec),
                _dumps(new.status),
                _dumps(new.labels),
                self._next_version(conn),
                generation,
                current.uid,
            ),
        )
        if new.owner_references != current.owner_references:
            _check_owners(conn, new)
            self._write_refs(conn, current.uid, new.owner_references)
        return self._load_uid(conn, current.uid)

    def create(self, obj: Resource) -> Resource:
        _validate(obj)
        with self._tx() as conn:
            if self._load(conn, obj.key) is not None:
                raise AlreadyExists(f"{obj.key} already exists")
            _check_owners(conn, obj)
            uid = uuid.uuid4().hex
            try:
                conn.execute(
                    """
                    INSERT INTO objects (uid, kind, namespace, name, spec, status, labels, resource_version, generation, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                    """,
                    (
                        uid,
                        obj.kind,
                        obj.namespace,
                        obj.name,
                        _dumps(obj.spec),
                        _dumps(obj.status),
                        _dumps(obj.labels),
                        self._next_version(conn),
                        utc_now(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise AlreadyExists(f"{obj.key} already exists") from e
            self._write_refs(conn, uid, obj.owner_references)
            stored = self._load_uid(conn, uid)
        self._dispatch([WatchEvent(ADDED, stored)])
        return stored.deepcopy()

    def update(self, obj: Resource) -> Resource:
        if obj.resource_version is None:
            raise Invalid(f"update of {obj.key} requires the resource_version last observed")
        _validate(obj)
        with self._tx() as conn:
            current = self._must_load(conn, obj.key)
            _check_version(current, obj.resource_version)
            new = current.deepcopy()
            new.spec = obj.deepcopy().spec
            new.labels = dict(obj.labels)
            new.owner_references = list(obj.owner_references)
            stored = self._replace(conn, current, new)
        if stored is None:
            return current
        self._dispatch([WatchEvent(MODIFIED, stored, current)])
        return stored.deepcopy()

    def patch(self, key: ObjectKey, patch: dict[str, Any], resource_version: int | None = None) -> Resource:
        unknown = set(patch) - {"spec", "metadata"}
        if unknown:
            raise Invalid(f"cannot patch {sorted(unknown)} of {key}")
        unknown = set(patch.get("metadata") or {}) - {"labels", "ownerReferences"}
        if unknown:
            raise Invalid(f"metadata fields {sorted(unknown)} of {key} are server-managed")
        with self._tx() as conn:
            current = self._must_load(conn, key)
            _check_version(current, resource_version)
            view = apply_merge_patch(current.mutable_view(), patch)
            meta = view.get("metadata") or {}
            new = current.deepcopy()
            new.spec = view.get("spec") or {}
            new.labels = meta.get("labels") or {}
            new.owner_references = [OwnerReference.from_dict(r) for r in meta.get("ownerReferences") or []]
            _validate(new)
            stored = self._replace(conn, current, new)
        if stored is None:
            return current
        self._dispatch([WatchEvent(MODIFIED, stored, current)])
        return stored.deepcopy()

    def patch_status(self, key: ObjectKey, patch: dict[str, Any], resource_version: int | None = None) -> Resource:
        if not isinstance(patch, dict):
            raise Invalid(f"status patch for {key} must be an object")
        with self._tx() as conn:
            current = self._must_load(conn, key)
            _check_version(current, resource_version)
            new = current.deepcopy()
            new.status = apply_merge_patch(current.status, patch)
            stored = self._replace(conn, current, new)
        if stored is None:
            return current
        self._dispatch([WatchEvent(MODIFIED, stored, current)])
        return stored.deepcopy()

    def _cascade(self, conn: sqlite3.Connection, root_uid: str) -> list[str]:
        """uids to delete with ``root_uid``: dependents whose owners are all going away."""
        doomed = [root_uid]
        seen = {root_uid}
        i = 0
        while i < len(doomed):
            uid = doomed[i]
            i += 1
            children = conn.execute("SELECT DISTINCT child_uid FROM owner_refs WHERE owner_uid=?", (uid,)).fetchall()
            for (child_uid,) in children:
                if child_uid in seen:
                    continue
                owners = conn.execute("SELECT owner_uid FROM owner_refs WHERE child_uid=?", (child_uid,)).fetchall()
                if all(o in seen or not self._exists(conn, o) for (o,) in owners):
                    seen.add(child_uid)
                    doomed.append(child_uid)
        return doomed

    def _exists(self, conn: sqlite3.Connection, uid: str) -> bool:
        return conn.execute("SELECT 1 FROM objects WHERE uid=?", (uid,)).fetchone() is not None

    def delete(self, key: ObjectKey, resource_version: int | None = None) -> None:
        events: list[WatchEvent] = []
        with self._tx() as conn:
            current = self._must_load(conn, key)
            _check_version(current, resource_version)
            doomed = self._cascade(conn, current.uid)
            marks = ",".join("?" * len(doomed))

            # Dependents that keep another owner lose their dangling references.
            survivors = conn.execute(
                f"SELECT DISTINCT child_uid FROM owner_refs WHERE owner_uid IN ({marks}) AND child_uid NOT IN ({marks})",
                (*doomed, *doomed),
            ).fetchall()

            for uid in doomed:
                obj = self._load_uid(conn, uid)
                conn.execute("DELETE FROM objects WHERE uid=?", (uid,))
                events.append(WatchEvent(DELETED, obj))

            for (child_uid,) in survivors:
                before = self._load_uid(conn, child_uid)
                conn.execute(f"DELETE FROM owner_refs WHERE child_uid=? AND owner_uid IN ({marks})", (child_uid, *doomed))
                conn.execute(
                    "UPDATE objects SET resource_version=? WHERE uid=?",
                    (self._next_version(conn), child_uid),
                )
                events.append(WatchEvent(MODIFIED, self._load_uid(conn, child_uid), before))
        self._dispatch(events)

    # --- watch & events ----------------------------------------------------

    def watch(self, kind: str, predicate: Predicate | None = None, namespace: str | None = None) -> Watch:
        w = Watch(kind, predicate=predicate, namespace=namespace, on_close=self._forget_watch)
        with self._watch_lock:
            self._watches.append(w)
        return w

    def _forget_watch(self, w: Watch) -> None:
        with self._watch_lock:
            if w in self._watches:
                self._watches.remove(w)

    def _dispatch(self, events: list[WatchEvent]) -> None:
        with self._watch_lock:
            watches = list(self._watches)
        for event in events:
            for w in watches:
                w.push(event)

    def record_event(self, key: ObjectKey, event_type: str, reason: str, message: str) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO events (ts, type, kind, namespace, name, reason, message) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (utc_now(), event_type, key.kind, key.namespace, key.name, reason, message),
            )

    def list_events(self, limit: int = 100, key: ObjectKey | None = None) -> list[dict[str, Any]]:
        with self._tx() as conn:
            if key is not None:
                rows = conn.execute(
                    "SELECT * FROM events WHERE kind=? AND namespace=? AND name=? ORDER BY id DESC LIMIT ?",
                    (key.kind, key.namespace, key.name, limit),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
            return [dict(r) for r in rows]

    def close(self) -> None:
        with self._watch_lock:
            watches = list(self._watches)
        for w in watches:
            w.close()
        with self._lock:
            self._conn.close()
