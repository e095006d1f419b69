"""Orchestrator: one entry point for plan, apply, destroy and state verbs.

Every operation that reads state to decide something, or writes state,
holds the state lock for its whole duration. Declarations are validated
before the lock is taken, so invalid input never touches state.
"""

import logging
from contextlib import contextmanager
from typing import Callable, Optional

from common import DriftError, EngineError
from config import EngineConfig
from declarations import Declarations
from orchestrator.executor import ApplyExecutor, ApplyResult
from orchestrator.graph import ResourceGraph
from orchestrator.reconciler import DriftEntry, Reconciler
from orchestrator.scheduler import Plan, Scheduler
from orchestrator.state import LocalStateBackend, StateSnapshot
from providers import build_registry

logger = logging.getLogger(__name__)


class Orchestrator:
    """Drives the graph → reconcile → schedule → execute pipeline.

    Attributes:
        declarations: Root declarations
        config: Engine configuration
        variables: Root variable overrides
        registry: ProviderRegistry (built from declarations.providers if not given)
        backend: StateBackend (LocalStateBackend at config.state_path if not given)
    """

    def __init__(
        self,
        declarations: Declarations,
        config: Optional[EngineConfig] = None,
        variables: Optional[dict] = None,
        registry=None,
        backend=None,
    ):
        self.declarations = declarations
        self.config = config or EngineConfig()
        self.variables = dict(variables or {})
        self.registry = registry or build_registry(declarations.providers, self.config.work_dir)
        self.backend = backend or LocalStateBackend(self.config.resolved_state_path)
        self._executor: Optional[ApplyExecutor] = None

    @contextmanager
    def _locked(self, operation: str):
        self.backend.acquire_lock(operation)
        try:
            yield
        finally:
            self.backend.release_lock()

    def build_graph(self) -> ResourceGraph:
        """Build and validate the resource graph.

        Raises:
            ValidationError: If declarations, references or schemas are invalid
        """
        return ResourceGraph.build(self.declarations, self.variables, registry=self.registry)

    def validate(self) -> ResourceGraph:
        graph = self.build_graph()
        logger.info(f"Declarations '{self.declarations.name}' are valid ({len(graph)} resources)")
        return graph

    def _make_plan(self, graph: ResourceGraph, snapshot: StateSnapshot,
                   destroy: bool, refresh: Optional[bool]) -> Plan:
        refresh = self.config.refresh if refresh is None else refresh
        diff = Reconciler(graph, snapshot, self.registry).diff(destroy=destroy, refresh=refresh)
        return Scheduler(graph, snapshot).schedule(diff, destroy=destroy)

    def plan(self, destroy: bool = False, refresh: Optional[bool] = None) -> Plan:
        """Compute a plan against the current state.

        Args:
            destroy: Plan destruction of everything in state
            refresh: Detect drift (default: config.refresh)
        """
        graph = self.build_graph()
        with self._locked('plan'):
            snapshot = self.backend.load()
            plan = self._make_plan(graph, snapshot, destroy, refresh)
        summary = plan.summary()
        logger.info(
            f"Plan: {summary['create']} to create, {summary['update']} to update, "
            f"{summary['replace']} to replace, {summary['destroy']} to destroy"
        )
        return plan

    def apply(
        self,
        plan: Optional[Plan] = None,
        destroy: bool = False,
        refresh: Optional[bool] = None,
        fail_on_drift: bool = False,
        confirm: Optional[Callable[[Plan], bool]] = None,
    ) -> Optional[ApplyResult]:
        """Plan (unless given a plan) and apply.

        Args:
            plan: A plan from plan(); recomputed when None
            destroy: Destroy everything in state (ignored when plan is given)
            refresh: Detect drift while planning (default: config.refresh)
            fail_on_drift: Raise DriftError instead of applying when drift is found
            confirm: Called with the plan before applying; returning False aborts

        Returns:
            ApplyResult, or None if confirm declined

        Raises:
            ValidationError: If declarations are invalid (state untouched)
            LockConflictError: If another run holds the lock
            DriftError: If fail_on_drift and drift was detected
            PlanConflictError: If plan is stale or was already applied
            PartialApplyError: If any step failed or was skipped
        """
        graph = self.build_graph()
        operation = 'destroy' if (plan.destroy if plan else destroy) else 'apply'
        with self._locked(operation):
            snapshot = self.backend.load()
            if plan is None:
                plan = self._make_plan(graph, snapshot, destroy, refresh)
            if fail_on_drift and plan.drift:
                raise DriftError(plan.drift)
            if confirm is not None and not confirm(plan):
                logger.info("Apply declined")
                return None

            self._executor = ApplyExecutor(
                graph, self.registry, self.backend,
                concurrency=self.config.concurrency,
                timeout=self.config.timeout,
            )
            try:
                return self._executor.execute(plan, snapshot)
            finally:
                self._executor = None

    def destroy(self, **kwargs) -> Optional[ApplyResult]:
        """Destroy every resource in state. Accepts apply()'s keyword arguments."""
        return self.apply(destroy=True, **kwargs)

    def cancel(self) -> None:
        """Cancel a running apply (no-op when idle)."""
        if self._executor is not None:
            self._executor.cancel()

    def refresh(self) -> tuple[list[DriftEntry], StateSnapshot]:
        """Accept drift: record what providers report into state.

        Deleted resources are removed from state; modified ones get the
        provider-reported outputs.
        """
        with self._locked('refresh'):
            snapshot = self.backend.load()
            graph = ResourceGraph([], outputs={})
            drift = Reconciler(graph, snapshot, self.registry).detect_drift()
            updated = snapshot
            for entry in drift:
                if entry.kind == 'deleted':
                    updated = updated.without_resource(entry.address)
                else:
                    updated = updated.with_resource(
                        updated.get(entry.address).replace(outputs=entry.actual)
                    )
            if updated is not snapshot:
                self.backend.save(updated)
                logger.info(f"Refreshed state: {len(drift)} resource(s) updated")
            else:
                logger.info("No drift detected")
        return drift, updated

    def _set_status(self, address: str, status: str) -> StateSnapshot:
        with self._locked('taint' if status == 'tainted' else 'untaint'):
            snapshot = self.backend.load()
            entry = snapshot.get(address)
            if entry is None:
                raise EngineError(f"No resource '{address}' in state")
            if entry.status == status:
                logger.info(f"{address} is already {status}")
                return snapshot
            snapshot = snapshot.with_resource(entry.replace(status=status))
            self.backend.save(snapshot)
        logger.info(f"Marked {address} as {status}")
        return snapshot

    def taint(self, address: str) -> StateSnapshot:
        """Force replacement of address on the next apply."""
        return self._set_status(address, 'tainted')

    def untaint(self, address: str) -> StateSnapshot:
        return self._set_status(address, 'applied')

    def state(self) -> StateSnapshot:
        """Current snapshot (read without locking)."""
        return self.backend.load()

    def outputs(self) -> dict:
        return dict(self.backend.load().outputs)

    def force_unlock(self, lock_id: Optional[str] = None) -> Optional[dict]:
        return self.backend.force_unlock(lock_id)
