"""OpenStackControlPlane: a parent that owns one MariaDB and one KeystoneAPI.

Child names are fixed. Keystone only works when its database instance is
named "openstack", and other components look the children up by these names,
so they are not derived from the parent's name.
"""

from __future__ import annotations

import copy
from typing import Any

from .converge import OperationResult, create_or_patch, ensure_absent
from .errors import Invalid
from .objects import ObjectKey, Resource
from .outcome import Converged, Outcome, RequeueAfter
from .ownership import set_controller_reference
from .reconciler import Controller, Reconciler
from .settings import settings
from .store import Store

KIND = "OpenStackControlPlane"
MARIADB = "MariaDB"
KEYSTONE = "KeystoneAPI"

# Creation order: KeystoneAPI references the MariaDB instance by name.
CHILD_KINDS = (MARIADB, KEYSTONE)

MARIADB_NAME = "openstack"
KEYSTONE_NAME = "keystone"
CHILD_NAMES = {MARIADB: MARIADB_NAME, KEYSTONE: KEYSTONE_NAME}

TEMPLATE_FIELDS = {MARIADB: "mariadbTemplate", KEYSTONE: "keystoneTemplate"}

DEFAULT_STORAGE_CLASS = "standard"


def validate_parent_spec(spec: Any) -> None:
    """Reject malformed parent specs before anything is resolved from them."""
    if not isinstance(spec, dict):
        raise Invalid("spec must be an object")
    for field in ("secret", "storageClass"):
        value = spec.get(field)
        if value is not None and not isinstance(value, str):
            raise Invalid(f"spec.{field} must be a string")
    for field in TEMPLATE_FIELDS.values():
        template = spec.get(field)
        if template is None:
            continue
        if not isinstance(template, dict):
            raise Invalid(f"spec.{field} must be an object")
        enabled = template.get("enabled", True)
        if not isinstance(enabled, bool):
            raise Invalid(f"spec.{field}.enabled must be a boolean")


def effective_storage_class(parent_spec: dict[str, Any]) -> str:
    return parent_spec.get("storageClass") or DEFAULT_STORAGE_CLASS


def _template(parent_spec: dict[str, Any], child_kind: str) -> dict[str, Any] | None:
    template = copy.deepcopy(parent_spec.get(TEMPLATE_FIELDS[child_kind]) or {})
    if not template.pop("enabled", True):
        return None
    return template


def resolve(parent_spec: dict[str, Any], child_kind: str) -> dict[str, Any] | None:
    """Desired spec of ``child_kind`` for this parent spec; None means absent."""
    if child_kind not in TEMPLATE_FIELDS:
        raise KeyError(child_kind)
    spec = _template(parent_spec, child_kind)
    if spec is None:
        return None

    if not spec.get("secret") and parent_spec.get("secret"):
        spec["secret"] = parent_spec["secret"]

    if child_kind == MARIADB:
        if not spec.get("storageClass"):
            spec["storageClass"] = effective_storage_class(parent_spec)
    elif child_kind == KEYSTONE:
        if not spec.get("databaseInstance"):
            spec["databaseInstance"] = MARIADB_NAME
    return spec


def child_key(parent: Resource, child_kind: str) -> ObjectKey:
    return ObjectKey(child_kind, parent.namespace, CHILD_NAMES[child_kind])


class ControlPlaneReconciler(Reconciler):
    kind = KIND
    owns = CHILD_KINDS

    def __init__(
        self,
        store: Store,
        not_ready_requeue_s: float | None = None,
        conflict_retries: int | None = None,
    ) -> None:
        super().__init__(store)
        self.not_ready_requeue_s = settings.not_ready_requeue_s if not_ready_requeue_s is None else not_ready_requeue_s
        self.conflict_retries = conflict_retries

    def reconcile(self, parent: Resource) -> Outcome:
        validate_parent_spec(parent.spec)

        children: dict[str, dict[str, Any]] = {}
        waiting: list[str] = []
        for child_kind in CHILD_KINDS:
            key = child_key(parent, child_kind)
            desired = resolve(parent.spec, child_kind)
            if desired is None:
                if ensure_absent(self.store, key, owner=parent, max_attempts=self.conflict_retries):
                    self._event(parent, "Deleted", f"Deleted {key.kind} {key.name}")
                continue

            child, result = create_or_patch(
                self.store,
                Resource(kind=key.kind, namespace=key.namespace, name=key.name),
                self._mutate_child(parent, desired),
                max_attempts=self.conflict_retries,
            )
            if result is not OperationResult.UNCHANGED:
                self._event(parent, result.value.capitalize(), f"{result.value.capitalize()} {key.kind} {key.name}")

            ready = bool(child.status.get("ready", False))
            children[child_kind] = {"name": key.name, "ready": ready}
            if not ready:
                waiting.append(child_kind)

        parent.status["children"] = children
        if waiting:
            return RequeueAfter(self.not_ready_requeue_s)
        return Converged()

    def _mutate_child(self, parent: Resource, desired: dict[str, Any]):
        def mutate(child: Resource) -> None:
            child.spec = copy.deepcopy(desired)
            set_controller_reference(parent, child)

        return mutate

    def _event(self, parent: Resource, reason: str, message: str) -> None:
        self.store.record_event(parent.key, "Normal", reason, message)


def build_controller(store: Store, **kwargs: Any) -> Controller:
    """Controller for OpenStackControlPlane objects.

    Keyword arguments ``not_ready_requeue_s`` and ``conflict_retries`` go to
    the reconciler (the latter to the controller too); the rest go to the
    Controller.
    """
    reconciler = ControlPlaneReconciler(
        store,
        not_ready_requeue_s=kwargs.pop("not_ready_requeue_s", None),
        conflict_retries=kwargs.get("conflict_retries"),
    )
    return Controller(store, reconciler, **kwargs)
