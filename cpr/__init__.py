"""Control-Plane Reconciler (CPR).

Level-triggered convergence engine for parent/child resources:
 - create-or-patch convergence with optimistic-concurrency retries
 - controller owner references with store-side cascade deletion
 - a deduplicating, rate-limited work queue drained by a worker pool
 - watch- and resync-driven reconcile loop with status reporting

The OpenStackControlPlane reconciler in ``cpr.controlplane`` is the bundled
consumer of the engine.
"""
