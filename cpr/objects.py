from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True, order=True)
class ObjectKey:
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


@dataclass(frozen=True)
class OwnerReference:
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OwnerReference:
        return cls(
            kind=data["kind"],
            name=data["name"],
            uid=data["uid"],
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )


@dataclass
class Resource:
    """A stored object: identity, spec, status and server-managed metadata."""

    kind: str
    namespace: str
    name: str
    spec: dict[str, Any] = field(default_factory=dict)
    status: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)

    # Server-managed
    uid: str | None = None
    resource_version: int | None = None
    generation: int = 0
    created_at: str | None = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.kind, self.namespace, self.name)

    def deepcopy(self) -> Resource:
        return copy.deepcopy(self)

    def mutable_view(self) -> dict[str, Any]:
        """Fields a writer may change through update/patch (status excluded)."""
        return {
            "metadata": {
                "labels": dict(self.labels),
                "ownerReferences": [r.to_dict() for r in self.owner_references],
            },
            "spec": copy.deepcopy(self.spec),
        }

    def to_dict(self) -> dict[str, Any]:
        body = self.mutable_view()
        body["kind"] = self.kind
        body["metadata"].update(
            {
                "namespace": self.namespace,
                "name": self.name,
                "uid": self.uid,
                "resourceVersion": self.resource_version,
                "generation": self.generation,
                "creationTimestamp": self.created_at,
            }
        )
        body["status"] = copy.deepcopy(self.status)
        return body


def get_condition(status: dict[str, Any], cond_type: str) -> dict[str, Any] | None:
    for cond in status.get("conditions", []):
        if cond.get("type") == cond_type:
            return cond
    return None


def set_condition(status: dict[str, Any], cond_type: str, cond_status: str, reason: str, message: str = "") -> None:
    """Insert or update a condition in place.

    lastTransitionTime only moves when the condition's status flips, so
    re-asserting an unchanged condition leaves the status untouched.
    """
    conditions = status.setdefault("conditions", [])
    current = get_condition(status, cond_type)
    if current is None:
        conditions.append(
            {
                "type": cond_type,
                "status": cond_status,
                "reason": reason,
                "message": message,
                "lastTransitionTime": utc_now(),
            }
        )
        return
    if current.get("status") != cond_status:
        current["lastTransitionTime"] = utc_now()
    current["status"] = cond_status
    current["reason"] = reason
    current["message"] = message
