import threading
import time

import pytest

from cpr.errors import Invalid, Transient
from cpr.objects import ObjectKey, Resource, get_condition
from cpr.outcome import Converged, Fatal, RequeueAfter, RequeueImmediately
from cpr.ownership import set_controller_reference
from cpr.reconciler import Controller, Reconciler
from cpr.workqueue import ItemExponentialBackoff, WorkQueue


class FakeReconciler(Reconciler):
    kind = "Widget"
    owns = ("Gadget",)

    def __init__(self, store, body=None):
        super().__init__(store)
        self.body = body or (lambda parent: Converged())
        self.calls = []
        self._lock = threading.Lock()

    def reconcile(self, parent):
        with self._lock:
            self.calls.append(parent.key)
        return self.body(parent)


def _controller(store, reconciler, **kwargs):
    kwargs.setdefault("workers", 1)
    kwargs.setdefault("resync_interval_s", 0)
    kwargs.setdefault("queue", WorkQueue(rate_limiter=ItemExponentialBackoff(base_delay_s=10, max_delay_s=60)))
    return Controller(store, reconciler, **kwargs)


def _raise(exc):
    def body(parent):
        raise exc

    return body


def test_missing_parent_is_dropped(store):
    fake = FakeReconciler(store)
    ctl = _controller(store, fake)

    outcome = ctl.reconcile_key(ObjectKey("Widget", "default", "gone"))

    assert outcome == Converged()
    assert fake.calls == []
    assert ctl.stats()["counters"]["dropped"] == 1


def test_converged_sets_ready_and_observed_generation(store, make_parent):
    parent = make_parent("w", kind="Widget", spec={"size": 1})
    ctl = _controller(store, FakeReconciler(store))

    assert ctl.reconcile_key(parent.key) == Converged()

    status = store.get(parent.key).status
    assert status["observedGeneration"] == 1
    ready = get_condition(status, "Ready")
    assert (ready["status"], ready["reason"]) == ("True", "Converged")


def test_status_edits_from_body_are_persisted(store, make_parent):
    parent = make_parent("w", kind="Widget")

    def body(p):
        p.status["children"] = {"Gadget": {"name": "g", "ready": True}}
        p.spec["ignored"] = True
        return Converged()

    ctl = _controller(store, FakeReconciler(store, body))
    ctl.reconcile_key(parent.key)

    stored = store.get(parent.key)
    assert stored.status["children"] == {"Gadget": {"name": "g", "ready": True}}
    assert stored.spec == {}


def test_repeated_reconcile_does_not_rewrite_status(store, make_parent):
    parent = make_parent("w", kind="Widget")
    ctl = _controller(store, FakeReconciler(store))

    ctl.reconcile_key(parent.key)
    first = store.get(parent.key)
    ctl.reconcile_key(parent.key)
    second = store.get(parent.key)

    assert second.resource_version == first.resource_version


def test_invalid_spec_is_fatal_and_not_requeued(store, make_parent):
    parent = make_parent("w", kind="Widget")
    ctl = _controller(store, FakeReconciler(store, _raise(Invalid("size must be positive"))))
    ctl.queue.add(parent.key)

    assert ctl.process_next(timeout=0) is True

    assert len(ctl.queue) == 0
    assert ctl.queue.delayed_count == 0
    ready = get_condition(store.get(parent.key).status, "Ready")
    assert (ready["status"], ready["reason"]) == ("False", "ReconcileFailed")
    assert "size must be positive" in ready["message"]
    events = store.list_events(key=parent.key)
    assert [(e["type"], e["reason"]) for e in events] == [("Warning", "ReconcileFailed")]
    assert ctl.stats()["counters"]["fatal"] == 1


def test_transient_error_is_requeued_with_backoff(store, make_parent):
    parent = make_parent("w", kind="Widget")
    ctl = _controller(store, FakeReconciler(store, _raise(Transient("store busy"))))
    ctl.queue.add(parent.key)

    ctl.process_next(timeout=0)

    assert ctl.queue.delayed_count == 1
    assert ctl.queue.num_requeues(parent.key) == 1
    ready = get_condition(store.get(parent.key).status, "Ready")
    assert ready["reason"] == "Retrying"
    assert [e["reason"] for e in store.list_events(key=parent.key)] == ["ReconcileRetrying"]
    ctl.queue.shut_down()


def test_unexpected_exception_is_retried_not_fatal(store, make_parent):
    parent = make_parent("w", kind="Widget")
    ctl = _controller(store, FakeReconciler(store, _raise(RuntimeError("boom"))))

    outcome = ctl.reconcile_key(parent.key)

    assert isinstance(outcome, RequeueImmediately)
    assert "boom" in outcome.reason


def test_requeue_after_schedules_without_backoff(store, make_parent):
    parent = make_parent("w", kind="Widget")
    ctl = _controller(store, FakeReconciler(store, lambda p: RequeueAfter(30)))
    ctl.queue.add(parent.key)

    ctl.process_next(timeout=0)

    assert ctl.queue.delayed_count == 1
    assert ctl.queue.num_requeues(parent.key) == 0
    ready = get_condition(store.get(parent.key).status, "Ready")
    assert ready["reason"] == "Progressing"
    ctl.queue.shut_down()


def test_success_resets_backoff(store, make_parent):
    parent = make_parent("w", kind="Widget")
    results = [Transient("busy"), None]

    def body(p):
        exc = results.pop(0)
        if exc is not None:
            raise exc
        return Converged()

    ctl = _controller(store, FakeReconciler(store, body))
    ctl.queue.add(parent.key)
    ctl.process_next(timeout=0)
    assert ctl.queue.num_requeues(parent.key) == 1

    ctl.queue.add(parent.key)
    ctl.process_next(timeout=0)
    assert ctl.queue.num_requeues(parent.key) == 0
    ctl.queue.shut_down()


def test_restart_after_stop_is_refused(store):
    ctl = _controller(store, FakeReconciler(store))
    ctl.start()
    assert ctl.running
    assert ctl.stop(grace_s=2) is True
    assert not ctl.running
    with pytest.raises(RuntimeError):
        ctl.start()


def test_same_key_is_never_reconciled_concurrently(store, make_parent, wait_for):
    parent = make_parent("w", kind="Widget", spec={"n": 0})
    active = {"now": 0, "max": 0}
    lock = threading.Lock()

    def body(p):
        with lock:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
        time.sleep(0.005)
        with lock:
            active["now"] -= 1
        return Converged()

    fake = FakeReconciler(store, body)
    ctl = _controller(store, fake, workers=4)
    ctl.start()
    try:

        def storm():
            for _ in range(50):
                ctl.enqueue(parent.key)

        threads = [threading.Thread(target=storm) for _ in range(4)]
        for t in threads:
            t.start()
        for n in range(1, 6):
            store.patch(parent.key, {"spec": {"n": n}})
        for t in threads:
            t.join()

        assert wait_for(
            lambda: store.get(parent.key).status.get("observedGeneration") == 6
            and ctl.queue.wait_until_idle(timeout=0.01)
        )
    finally:
        ctl.stop(grace_s=2)

    assert active["max"] == 1


def test_triggers_during_a_run_collapse_into_one_more_run(store, make_parent, wait_for):
    parent = make_parent("w", kind="Widget")
    entered = threading.Event()
    release = threading.Event()

    def body(p):
        if not entered.is_set():
            entered.set()
            assert release.wait(5)
        return Converged()

    fake = FakeReconciler(store, body)
    ctl = _controller(store, fake, workers=2)
    ctl.start()
    try:
        assert entered.wait(5)
        for _ in range(5):
            ctl.enqueue(parent.key)
        release.set()

        assert wait_for(lambda: len(fake.calls) == 2 and ctl.queue.wait_until_idle(timeout=0.01))
        time.sleep(0.05)
    finally:
        ctl.stop(grace_s=2)

    assert len(fake.calls) == 2


def test_owned_object_changes_trigger_the_owner(store, make_parent, wait_for):
    parent = make_parent("w", kind="Widget")
    fake = FakeReconciler(store)
    ctl = _controller(store, fake)
    ctl.start()
    try:
        assert wait_for(lambda: len(fake.calls) == 1 and ctl.queue.wait_until_idle(timeout=0.01))

        gadget = Resource(kind="Gadget", namespace="default", name="g")
        set_controller_reference(parent, gadget)
        store.create(gadget)
        store.create(Resource(kind="Gadget", namespace="default", name="orphan"))

        assert wait_for(lambda: len(fake.calls) == 2)
    finally:
        ctl.stop(grace_s=2)

    assert set(fake.calls) == {parent.key}


def test_fatal_outcome_waits_for_a_new_trigger(store, make_parent):
    parent = make_parent("w", kind="Widget")
    ctl = _controller(store, FakeReconciler(store, lambda p: Fatal(Invalid("bad"))))
    ctl.queue.add(parent.key)

    ctl.process_next(timeout=0)

    assert ctl.process_next(timeout=0.05) is False


def test_stop_does_not_start_queued_reconciles(store, wait_for):
    for i in range(30):
        store.create(Resource(kind="Widget", namespace="default", name=f"w{i:02d}"))

    def slow(p):
        time.sleep(0.05)
        return Converged()

    fake = FakeReconciler(store, slow)
    ctl = _controller(store, fake, workers=1)
    ctl.start()
    assert wait_for(lambda: len(fake.calls) >= 1)

    assert ctl.stop(grace_s=2) is True
    calls_at_stop = len(fake.calls)
    time.sleep(0.3)

    assert len(fake.calls) == calls_at_stop
    assert calls_at_stop < 30
