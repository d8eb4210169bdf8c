from __future__ import annotations


class ReconcileError(Exception):
    """Base class for every error the engine classifies."""

    retryable = False


class NotFound(ReconcileError):
    pass


class Conflict(ReconcileError):
    """The object changed since it was read (version token mismatch)."""

    retryable = True


class AlreadyExists(Conflict):
    """Lost a create race: another writer created the object first."""


class Transient(ReconcileError):
    """Store unavailable or retry budget exhausted; worth trying again later."""

    retryable = True


class Invalid(ReconcileError):
    """Malformed desired state. Needs a spec change before it can succeed."""


class Fatal(ReconcileError):
    """Unrecoverable without external intervention."""


class AlreadyOwned(Fatal):
    """The object is already controlled by a different owner."""

    def __init__(self, obj_key, owner_kind: str, owner_name: str) -> None:
        super().__init__(f"{obj_key} is already controlled by {owner_kind}/{owner_name}")
        self.obj_key = obj_key
        self.owner_kind = owner_kind
        self.owner_name = owner_name


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ReconcileError) and exc.retryable
