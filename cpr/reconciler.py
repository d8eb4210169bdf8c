from __future__ import annotations

import copy
import logging
import time
from abc import ABC, abstractmethod
from threading import Event, Lock, Thread
from typing import Any, Callable

from .converge import patch_with_retry
from .errors import NotFound, ReconcileError
from .objects import ObjectKey, Resource, set_condition
from .outcome import Converged, Fatal, Outcome, RequeueAfter, RequeueImmediately, outcome_for_error
from .ownership import owner_key
from .settings import settings
from .store import Store, Watch, WatchEvent, generation_changed
from .workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Reconciler(ABC):
    """Domain reconcile body for one parent kind."""

    kind: str = ""
    owns: tuple[str, ...] = ()

    def __init__(self, store: Store) -> None:
        self.store = store

    @abstractmethod
    def reconcile(self, parent: Resource) -> Outcome:
        """Drive the parent's children toward its spec.

        ``parent`` is a private copy; edits to its ``status`` are persisted by
        the controller, edits to anything else are discarded.
        """


class Controller:
    """Continuously reconciles every parent of one kind.

    Watch streams and a periodic resync feed parent keys into a deduplicating
    work queue; a fixed pool of worker threads drains it, one key at a time
    per worker.
    """

    def __init__(
        self,
        store: Store,
        reconciler: Reconciler,
        workers: int | None = None,
        resync_interval_s: float | None = None,
        namespace: str | None = None,
        conflict_retries: int | None = None,
        queue: WorkQueue | None = None,
    ) -> None:
        self.store = store
        self.reconciler = reconciler
        self.workers = max(1, int(settings.workers if workers is None else workers))
        self.resync_interval_s = settings.resync_interval_s if resync_interval_s is None else resync_interval_s
        self.namespace = (settings.namespace if namespace is None else namespace) or None
        self.conflict_retries = settings.conflict_retries if conflict_retries is None else conflict_retries
        self.queue = queue or WorkQueue()
        self._stop = Event()
        self._threads: list[Thread] = []
        self._watches: list[Watch] = []
        self._stats_lock = Lock()
        self._stats: dict[str, int] = {
            "reconciles": 0,
            "converged": 0,
            "requeue_after": 0,
            "requeued": 0,
            "fatal": 0,
            "dropped": 0,
        }
        self._running = False

    @property
    def kind(self) -> str:
        return self.reconciler.kind

    @property
    def running(self) -> bool:
        return self._running

    # --- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        if self._stop.is_set():
            raise RuntimeError("a stopped controller cannot be restarted")

        parents = self.store.watch(self.kind, predicate=generation_changed, namespace=self.namespace)
        self._watches.append(parents)
        self._spawn(f"watch-{self.kind}", self._pump, parents, lambda e: e.key)
        for child_kind in self.reconciler.owns:
            children = self.store.watch(child_kind, namespace=self.namespace)
            self._watches.append(children)
            self._spawn(f"watch-{child_kind}", self._pump, children, self._owner_of)

        for i in range(self.workers):
            self._spawn(f"worker-{i}", self._worker)
        if self.resync_interval_s and self.resync_interval_s > 0:
            self._spawn("resync", self._resync_loop)

        self._running = True
        queued = self.resync()
        logger.info("controller for %s started with %d workers (%d objects queued)", self.kind, self.workers, queued)

    def stop(self, grace_s: float | None = None) -> bool:
        """Stop feeding and draining the queue.

        In-flight reconciliations get ``grace_s`` seconds to finish. Returns
        False if some worker was still busy when the grace period ran out.
        """
        grace_s = settings.shutdown_grace_s if grace_s is None else grace_s
        self._stop.set()
        for w in self._watches:
            w.close()
        self.queue.shut_down()

        deadline = time.monotonic() + max(0.0, grace_s)
        for t in self._threads:
            t.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in self._threads if t.is_alive()]
        if alive:
            logger.warning("controller for %s stopped with busy threads: %s", self.kind, ", ".join(alive))
        self._running = False
        return not alive

    def _spawn(self, name: str, target: Callable[..., None], *args: Any) -> None:
        thr = Thread(target=target, args=args, name=f"cpr-{name}", daemon=True)
        self._threads.append(thr)
        thr.start()

    # --- triggers ------------------------------------------------------------

    def _owner_of(self, event: WatchEvent) -> ObjectKey | None:
        return owner_key(event.object, self.kind)

    def _pump(self, watch: Watch, to_key: Callable[[WatchEvent], ObjectKey | None]) -> None:
        for event in watch:
            key = to_key(event)
            if key is not None:
                self.queue.add(key)

    def enqueue(self, key: ObjectKey) -> None:
        self.queue.add(key)

    def resync(self) -> int:
        """Queue every parent; catches drift nobody told us about."""
        parents = self.store.list(self.kind, namespace=self.namespace)
        for p in parents:
            self.queue.add(p.key)
        return len(parents)

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.resync_interval_s):
            try:
                self.resync()
            except ReconcileError as e:
                logger.warning("resync of %s failed: %s", self.kind, e)

    # --- work ----------------------------------------------------------------

    def _worker(self) -> None:
        while not self._stop.is_set() and self.process_next():
            pass

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one queued key. False on timeout or shutdown."""
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            try:
                outcome = self.reconcile_key(key)
            except Exception:
                # Never let one parent take a worker down.
                logger.exception("reconcile of %s crashed", key)
                outcome = RequeueImmediately(reason="crashed")
            self._requeue(key, outcome)
        finally:
            self.queue.done(key)
        return True

    def _requeue(self, key: ObjectKey, outcome: Outcome) -> None:
        if isinstance(outcome, RequeueImmediately):
            self.queue.add_rate_limited(key)
            return
        self.queue.forget(key)
        if isinstance(outcome, RequeueAfter):
            self.queue.add_after(key, outcome.delay_s)

    def reconcile_key(self, key: ObjectKey) -> Outcome:
        """Run one reconciliation of ``key`` and persist its result on the parent's status."""
        self._count("reconciles")
        try:
            parent = self.store.get(key)
        except NotFound:
            # Deleted; the store's cascade already took the children.
            logger.debug("%s is gone, dropping", key)
            self._count("dropped")
            return Converged()
        except ReconcileError as e:
            return self._tally(outcome_for_error(e))

        working = parent.deepcopy()
        try:
            outcome = self.reconciler.reconcile(working)
        except Exception as e:
            outcome = outcome_for_error(e)

        try:
            self._write_status(parent, working, outcome)
        except NotFound:
            self._count("dropped")
            return Converged()
        except ReconcileError as e:
            outcome = RequeueImmediately(reason=f"status update failed: {e}")

        if isinstance(outcome, Fatal):
            logger.warning("reconcile of %s failed permanently: %s", key, outcome.error)
            self._event(key, "Warning", "ReconcileFailed", str(outcome.error))
        elif isinstance(outcome, RequeueImmediately):
            logger.info("reconcile of %s will be retried: %s", key, outcome.reason)
            self._event(key, "Warning", "ReconcileRetrying", outcome.reason)
        return self._tally(outcome)

    def _write_status(self, parent: Resource, working: Resource, outcome: Outcome) -> None:
        status = copy.deepcopy(working.status)
        if isinstance(outcome, Converged):
            set_condition(status, "Ready", "True", "Converged", "All children converged")
        elif isinstance(outcome, RequeueAfter):
            set_condition(status, "Ready", "False", "Progressing", "Waiting for children to become ready")
        elif isinstance(outcome, RequeueImmediately):
            set_condition(status, "Ready", "False", "Retrying", outcome.reason)
        else:
            set_condition(status, "Ready", "False", "ReconcileFailed", str(outcome.error))
        status["observedGeneration"] = parent.generation

        def mutate(obj: Resource) -> None:
            obj.status = copy.deepcopy(status)

        patch_with_retry(self.store, parent.key, mutate, max_attempts=self.conflict_retries)

    def _event(self, key: ObjectKey, event_type: str, reason: str, message: str) -> None:
        try:
            self.store.record_event(key, event_type, reason, message)
        except ReconcileError as e:
            logger.warning("could not record %s event for %s: %s", reason, key, e)

    # --- stats ---------------------------------------------------------------

    def _count(self, name: str) -> None:
        with self._stats_lock:
            self._stats[name] += 1

    def _tally(self, outcome: Outcome) -> Outcome:
        if isinstance(outcome, Converged):
            self._count("converged")
        elif isinstance(outcome, RequeueAfter):
            self._count("requeue_after")
        elif isinstance(outcome, RequeueImmediately):
            self._count("requeued")
        else:
            self._count("fatal")
        return outcome

    def stats(self) -> dict[str, Any]:
        with self._stats_lock:
            counters = dict(self._stats)
        return {
            "kind": self.kind,
            "running": self._running,
            "workers": self.workers,
            "queue_depth": len(self.queue),
            "processing": self.queue.processing_count,
            "delayed": self.queue.delayed_count,
            "counters": counters,
        }
