from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from .errors import Fatal as FatalError, Invalid, NotFound, is_retryable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Converged:
    pass


@dataclass(frozen=True)
class RequeueAfter:
    """Expected wait (e.g. a child is not ready yet); no backoff growth."""

    delay_s: float


@dataclass(frozen=True)
class RequeueImmediately:
    """Try again now, throttled by the per-item exponential backoff."""

    reason: str = ""


@dataclass(frozen=True)
class Fatal:
    """Recorded on the parent's status; waits for a new trigger."""

    error: BaseException


Outcome = Union[Converged, RequeueAfter, RequeueImmediately, Fatal]


def outcome_for_error(exc: BaseException) -> Outcome:
    if isinstance(exc, NotFound):
        return Converged()
    if isinstance(exc, (Invalid, FatalError)):
        return Fatal(exc)
    if is_retryable(exc):
        return RequeueImmediately(reason=f"{type(exc).__name__}: {exc}")
    logger.error("unexpected error during reconcile", exc_info=exc)
    return RequeueImmediately(reason=f"{type(exc).__name__}: {exc}")
