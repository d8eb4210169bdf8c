from __future__ import annotations

from .errors import AlreadyOwned, Invalid
from .objects import ObjectKey, OwnerReference, Resource
from .store import WatchEvent


def _refers_to(ref: OwnerReference, owner: Resource) -> bool:
    return ref.kind == owner.kind and ref.name == owner.name


def _check_owner(owner: Resource, obj: Resource) -> None:
    if not owner.uid:
        raise Invalid(f"owner {owner.key} has no uid; it must be read from the store first")
    if owner.namespace != obj.namespace:
        raise Invalid(f"cross-namespace owner references are disallowed ({owner.key} -> {obj.key})")


def _upsert(obj: Resource, ref: OwnerReference) -> None:
    for i, existing in enumerate(obj.owner_references):
        if existing.kind == ref.kind and existing.name == ref.name:
            obj.owner_references[i] = ref
            return
    obj.owner_references.append(ref)


def get_controller_reference(obj: Resource) -> OwnerReference | None:
    for ref in obj.owner_references:
        if ref.controller:
            return ref
    return None


def set_controller_reference(owner: Resource, obj: Resource) -> None:
    """Make ``owner`` the controller of ``obj`` (in place, before create/update).

    Re-stamping the same owner is a no-op apart from refreshing its uid;
    claiming an object another owner already controls raises AlreadyOwned.
    """
    _check_owner(owner, obj)
    current = get_controller_reference(obj)
    if current is not None and not _refers_to(current, owner):
        raise AlreadyOwned(obj.key, current.kind, current.name)
    _upsert(
        obj,
        OwnerReference(
            kind=owner.kind,
            name=owner.name,
            uid=owner.uid,
            controller=True,
            block_owner_deletion=True,
        ),
    )


def set_owner_reference(owner: Resource, obj: Resource) -> None:
    """Add a plain (non-controller) owner reference; keeps an existing controller flag."""
    _check_owner(owner, obj)
    controller = any(r.controller and _refers_to(r, owner) for r in obj.owner_references)
    _upsert(obj, OwnerReference(kind=owner.kind, name=owner.name, uid=owner.uid, controller=controller))


def is_controlled_by(obj: Resource, owner: Resource) -> bool:
    ref = get_controller_reference(obj)
    return ref is not None and _refers_to(ref, owner) and (not owner.uid or ref.uid == owner.uid)


def owner_key(obj: Resource, owner_kind: str) -> ObjectKey | None:
    """Key of the ``owner_kind`` object controlling ``obj``, if any."""
    ref = get_controller_reference(obj)
    if ref is None or ref.kind != owner_kind:
        return None
    return ObjectKey(owner_kind, obj.namespace, ref.name)


def filter_owned_by(event: WatchEvent, parent: Resource) -> bool:
    """Whether a watch event concerns an object that ``parent`` controls.

    Predicate form of ``owner_key`` for callers that already hold the parent;
    the controller routes child events by key instead, since it has no parent
    object in hand when an event arrives.
    """
    return is_controlled_by(event.object, parent)
