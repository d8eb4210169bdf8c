from __future__ import annotations

import logging
from enum import Enum
from typing import Callable

from tenacity import RetryCallState, RetryError, Retrying, retry_if_exception_type, stop_after_attempt

from .errors import Conflict, Invalid, NotFound, Transient
from .objects import ObjectKey, Resource
from .ownership import is_controlled_by
from .patch import create_merge_patch
from .settings import settings
from .store import Store

logger = logging.getLogger(__name__)

MutateFn = Callable[[Resource], None]


class OperationResult(str, Enum):
    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


def _mutate(mutate: MutateFn, obj: Resource, key: ObjectKey) -> None:
    mutate(obj)
    if obj.key != key:
        raise Invalid(f"mutate function must not change object identity ({key} -> {obj.key})")


def _patch_to_desired(store: Store, current: Resource, desired: Resource) -> Resource | None:
    """Send only the fields that differ; None when already converged."""
    obj_patch = create_merge_patch(current.mutable_view(), desired.mutable_view())
    status_patch = create_merge_patch(current.status, desired.status)
    if not obj_patch and not status_patch:
        return None

    result = current
    try:
        if obj_patch:
            result = store.patch(current.key, obj_patch, resource_version=current.resource_version)
        if status_patch:
            result = store.patch_status(current.key, status_patch, resource_version=result.resource_version)
    except NotFound as e:
        # Deleted between our read and our write; start over.
        raise Conflict(str(e)) from e
    return result


def _log_conflict(key: ObjectKey, max_attempts: int) -> Callable[[RetryCallState], None]:
    def log(state: RetryCallState) -> None:
        logger.debug(
            "conflict on %s (attempt %d/%d): %s",
            key,
            state.attempt_number,
            max_attempts,
            state.outcome.exception() if state.outcome else None,
        )

    return log


def _retry(key: ObjectKey, attempt_fn: Callable[[], tuple], max_attempts: int) -> tuple:
    """Run ``attempt_fn`` again on Conflict, at most ``max_attempts`` times in total."""
    max_attempts = max(1, int(max_attempts))
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        retry=retry_if_exception_type(Conflict),
        before_sleep=_log_conflict(key, max_attempts),
    )
    try:
        return retrying(attempt_fn)
    except RetryError as e:
        raise Transient(f"gave up on {key} after {max_attempts} conflicting attempts") from e.last_attempt.exception()


def create_or_patch(
    store: Store,
    obj: Resource,
    mutate: MutateFn,
    max_attempts: int | None = None,
) -> tuple[Resource, OperationResult]:
    """Converge the object identified by ``obj`` to whatever ``mutate`` makes of it.

    ``mutate`` receives the stored object (or an empty one carrying only the
    identity) and edits it in place. It may run several times, once per
    attempt, and must produce the same result for the same input.

    Returns (stored_object, result). Zero writes happen when the stored
    object already matches.
    """
    key = obj.key
    attempts = settings.conflict_retries if max_attempts is None else max_attempts

    def attempt() -> tuple[Resource, OperationResult]:
        try:
            current = store.get(key)
        except NotFound:
            desired = Resource(kind=key.kind, namespace=key.namespace, name=key.name)
            _mutate(mutate, desired, key)
            return store.create(desired), OperationResult.CREATED

        desired = current.deepcopy()
        _mutate(mutate, desired, key)
        result = _patch_to_desired(store, current, desired)
        if result is None:
            return current, OperationResult.UNCHANGED
        return result, OperationResult.UPDATED

    return _retry(key, attempt, attempts)


def patch_with_retry(
    store: Store,
    key: ObjectKey,
    mutate: MutateFn,
    max_attempts: int | None = None,
) -> tuple[Resource, OperationResult]:
    """Like create_or_patch for an object that must already exist (raises NotFound)."""
    attempts = settings.conflict_retries if max_attempts is None else max_attempts

    def attempt() -> tuple[Resource, OperationResult]:
        current = store.get(key)
        desired = current.deepcopy()
        _mutate(mutate, desired, key)
        # A concurrent delete surfaces as NotFound from the next attempt's get.
        result = _patch_to_desired(store, current, desired)
        if result is None:
            return current, OperationResult.UNCHANGED
        return result, OperationResult.UPDATED

    return _retry(key, attempt, attempts)


def ensure_absent(
    store: Store,
    key: ObjectKey,
    owner: Resource | None = None,
    max_attempts: int | None = None,
) -> bool:
    """Delete ``key`` if it exists (and, given ``owner``, is controlled by it).

    Returns True when this call deleted the object.
    """
    attempts = settings.conflict_retries if max_attempts is None else max_attempts

    def attempt() -> tuple[Resource | None, OperationResult]:
        try:
            current = store.get(key)
        except NotFound:
            return None, OperationResult.UNCHANGED
        if owner is not None and not is_controlled_by(current, owner):
            logger.info("leaving %s in place: not controlled by %s", key, owner.key)
            return current, OperationResult.UNCHANGED
        try:
            store.delete(key, resource_version=current.resource_version)
        except NotFound:
            return None, OperationResult.UNCHANGED
        return current, OperationResult.DELETED

    _, result = _retry(key, attempt, attempts)
    return result is OperationResult.DELETED
