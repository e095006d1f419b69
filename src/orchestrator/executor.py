"""Apply executor: runs a Plan against providers.

Steps run on a bounded thread pool. A step is dispatched once every step
it waits for has been applied; when a step fails, everything that waits
on it (directly or transitively) is skipped while independent steps carry
on.

State is written after every completed step, from one lock-guarded path,
so the persisted snapshot always matches the work that actually finished.
"""

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from common import NodeResult, PartialApplyError, PlanConflictError, ProviderError
from expressions import resolve
from orchestrator.graph import ResourceGraph
from orchestrator.scheduler import Plan, PlanStep
from orchestrator.state import ResourceState, StateSnapshot

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10

# How often the dispatch loop checks for cancellation and timeout
POLL_INTERVAL = 0.1


@dataclass
class ApplyResult:
    """Outcome of one apply run.

    Attributes:
        snapshot: State after the run (as persisted)
        results: One NodeResult per plan step, in plan order
        cancelled: Run was cancelled or timed out before finishing
        duration: Wall-clock seconds
    """
    snapshot: StateSnapshot
    results: list[NodeResult] = field(default_factory=list)
    cancelled: bool = False
    duration: float = 0.0

    def _addresses(self, status: str) -> list[str]:
        seen: list[str] = []
        for r in self.results:
            if r.status == status and r.address not in seen:
                seen.append(r.address)
        return seen

    @property
    def applied(self) -> list[str]:
        return self._addresses('applied')

    @property
    def failed(self) -> list[str]:
        return self._addresses('failed')

    @property
    def skipped(self) -> list[str]:
        return self._addresses('skipped')

    @property
    def success(self) -> bool:
        return not self.failed and not self.skipped

    def to_dict(self) -> dict:
        return {
            'success': self.success,
            'cancelled': self.cancelled,
            'duration': round(self.duration, 2),
            'serial': self.snapshot.serial,
            'nodes': [r.to_dict() for r in self.results],
            'outputs': self.snapshot.outputs,
        }


class ApplyExecutor:
    """Executes plan steps through providers and persists state as it goes."""

    def __init__(self, graph: ResourceGraph, registry, backend,
                 concurrency: int = DEFAULT_CONCURRENCY, timeout: Optional[float] = None):
        """
        Args:
            graph: Graph the plan was computed from
            registry: ProviderRegistry
            backend: StateBackend the snapshot is saved to after each step
            concurrency: Maximum provider operations in flight
            timeout: Seconds after which no new steps are dispatched
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {concurrency}")
        self.graph = graph
        self.registry = registry
        self.backend = backend
        self.concurrency = concurrency
        self.timeout = timeout
        self._cancel = threading.Event()
        self._state_lock = threading.Lock()
        self._snapshot: Optional[StateSnapshot] = None

    def cancel(self) -> None:
        """Stop dispatching new steps; in-flight steps finish and persist."""
        if not self._cancel.is_set():
            logger.warning("Cancelling apply: waiting for in-flight steps to finish")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _current(self) -> StateSnapshot:
        with self._state_lock:
            return self._snapshot

    def _persist(self, change: Callable[[StateSnapshot], StateSnapshot]) -> None:
        """Apply a change to the snapshot and save it (single writer)."""
        with self._state_lock:
            snapshot = change(self._snapshot)
            self.backend.save(snapshot)
            self._snapshot = snapshot

    def _resolve(self, step: PlanStep) -> dict:
        snapshot = self._current()
        node = self.graph.get_node(step.address)

        def lookup(body: str) -> Any:
            try:
                return snapshot.attribute(body)
            except KeyError:
                raise ProviderError(f"Reference '{body}' has no value in state", step.address)

        return resolve(node.attributes, lookup)

    def _create(self, step: PlanStep) -> dict:
        node = self.graph.get_node(step.address)
        attrs = self._resolve(step)
        node.resolve(attrs)
        outputs = self.registry.get(node.type).create(attrs)
        now = time.time()

        def change(snapshot: StateSnapshot) -> StateSnapshot:
            old = snapshot.get(step.address)
            deposed = None
            if old is not None:
                # Only a create_before_destroy replace leaves the old instance
                deposed = old.outputs if step.create_before_destroy else old.deposed
            return snapshot.with_resource(ResourceState(
                address=step.address,
                type=node.type,
                inputs=attrs,
                outputs=outputs,
                dependencies=tuple(self.graph.dependencies(step.address)),
                deposed=deposed,
                created_at=now,
                updated_at=now,
            ))

        self._persist(change)
        return outputs

    def _update(self, step: PlanStep) -> dict:
        node = self.graph.get_node(step.address)
        prior = self._current().get(step.address)
        if prior is None:
            raise ProviderError(f"No state to update for '{step.address}'", step.address)
        attrs = self._resolve(step)
        for key in node.lifecycle.ignore_changes:
            if key in prior.inputs:
                attrs[key] = prior.inputs[key]
        node.resolve(attrs)
        outputs = self.registry.get(node.type).update(attrs, dict(prior.outputs))

        def change(snapshot: StateSnapshot) -> StateSnapshot:
            current = snapshot.get(step.address) or prior
            return snapshot.with_resource(current.replace(
                inputs=attrs,
                outputs=outputs,
                dependencies=tuple(self.graph.dependencies(step.address)),
                status='applied',
                updated_at=time.time(),
            ))

        self._persist(change)
        return outputs

    def _destroy(self, step: PlanStep) -> dict:
        entry = self._current().get(step.address)
        if entry is None:
            logger.info(f"[destroy] {step.address}: not in state, nothing to do")
            return {}
        provider = self.registry.get(entry.type)

        if step.deposed:
            if entry.deposed is None:
                return {}
            provider.destroy(dict(entry.deposed))
            self._persist(lambda s: s.with_resource(s.get(step.address).replace(deposed=None))
                          if step.address in s else s)
            return {}

        provider.destroy(dict(entry.outputs))
        self._persist(lambda s: s.without_resource(step.address))
        return {}

    def _run_step(self, step: PlanStep) -> NodeResult:
        """Run one step in a worker thread. Never raises."""
        start = time.time()
        node = self.graph.get_node(step.address) if step.address in self.graph else None
        if node is not None and step.action != 'destroy':
            node.mark('applying')
        logger.info(f"[{step.action}] {step.describe()}")
        try:
            if step.action == 'create':
                outputs = self._create(step)
            elif step.action == 'update':
                outputs = self._update(step)
            else:
                outputs = self._destroy(step)
        except ProviderError as e:
            if node is not None and step.action != 'destroy':
                node.mark('failed')
            logger.error(f"[{step.action}] {step.describe()} failed: {e}")
            return NodeResult(step.address, step.action, 'failed', str(e), time.time() - start)
        except OSError as e:
            # State could not be written: the provider change is not recorded
            logger.error(f"[{step.action}] {step.describe()}: state write failed: {e}")
            self.cancel()
            return NodeResult(step.address, step.action, 'failed',
                              f"state write failed: {e}", time.time() - start)
        except Exception as e:
            logger.exception(f"[{step.action}] {step.describe()}: unexpected provider error")
            if node is not None and step.action != 'destroy':
                node.mark('failed')
            return NodeResult(step.address, step.action, 'failed',
                              f"{type(e).__name__}: {e}", time.time() - start)

        duration = time.time() - start
        if node is not None and step.action != 'destroy':
            node.mark('applied')
        logger.info(f"[{step.action}] {step.describe()} done ({duration:.1f}s)")
        return NodeResult(step.address, step.action, 'applied', duration=duration, outputs=outputs)

    def _check_plan(self, plan: Plan, snapshot: StateSnapshot) -> None:
        if plan.state_lineage != snapshot.lineage or plan.state_serial != snapshot.serial:
            raise PlanConflictError(
                f"Plan was computed against state serial {plan.state_serial} "
                f"but state is at serial {snapshot.serial}; create a new plan"
            )
        unknown = [s.address for s in plan.steps
                   if s.action != 'destroy' and s.address not in self.graph]
        if unknown:
            raise PlanConflictError(f"Plan steps not in graph: {', '.join(unknown)}")

    def execute(self, plan: Plan, snapshot: StateSnapshot) -> ApplyResult:
        """Apply every step of plan.

        Args:
            plan: Plan computed against snapshot
            snapshot: Current state

        Returns:
            ApplyResult when every step applied

        Raises:
            PlanConflictError: If the plan was already applied or is stale
            PartialApplyError: If any step failed or was skipped (carries the result)
        """
        self._check_plan(plan, snapshot)
        plan.consume()
        self._snapshot = snapshot
        start = time.time()
        deadline = start + self.timeout if self.timeout else None

        status: dict[str, str] = {s.key: 'pending' for s in plan.steps}
        results: dict[str, NodeResult] = {}
        running: dict[Future, PlanStep] = {}

        logger.info(f"Applying {len(plan.steps)} steps (concurrency {self.concurrency})")
        with ThreadPoolExecutor(max_workers=self.concurrency,
                                thread_name_prefix='apply') as pool:
            while True:
                self._skip_blocked(plan, status, results)

                if not self._cancel.is_set():
                    for step in plan.steps:
                        if len(running) >= self.concurrency:
                            break
                        if status[step.key] != 'pending':
                            continue
                        if all(status[d] == 'applied' for d in step.deps):
                            status[step.key] = 'running'
                            running[pool.submit(self._run_step, step)] = step

                if not running:
                    break

                try:
                    done, _ = wait(list(running), timeout=POLL_INTERVAL,
                                   return_when=FIRST_COMPLETED)
                except KeyboardInterrupt:
                    self.cancel()
                    continue

                for future in done:
                    step = running.pop(future)
                    result = future.result()
                    results[step.key] = result
                    status[step.key] = result.status

                if deadline is not None and time.time() > deadline and not self._cancel.is_set():
                    logger.warning(f"Apply timeout of {self.timeout}s reached")
                    self.cancel()

        for step in plan.steps:
            if status[step.key] == 'pending':
                status[step.key] = 'skipped'
                results[step.key] = NodeResult(step.address, step.action, 'skipped', 'cancelled')
                self._mark_skipped(step)

        self._refresh_outputs(plan)
        result = ApplyResult(
            snapshot=self._snapshot,
            results=[results[s.key] for s in plan.steps],
            cancelled=self._cancel.is_set(),
            duration=time.time() - start,
        )
        logger.info(f"Apply finished: {len(result.applied)} applied, {len(result.failed)} failed, "
                    f"{len(result.skipped)} skipped ({result.duration:.1f}s)")
        if not result.success:
            raise PartialApplyError(result.failed, result.skipped, result)
        return result

    def _mark_skipped(self, step: PlanStep) -> None:
        if step.action != 'destroy' and step.address in self.graph:
            self.graph.get_node(step.address).mark('skipped')

    def _skip_blocked(self, plan: Plan, status: dict, results: dict) -> None:
        """Skip pending steps waiting on a failed or skipped step."""
        changed = True
        while changed:
            changed = False
            for step in plan.steps:
                if status[step.key] != 'pending':
                    continue
                blocked = [d for d in step.deps if status[d] in ('failed', 'skipped')]
                if blocked:
                    status[step.key] = 'skipped'
                    results[step.key] = NodeResult(step.address, step.action, 'skipped',
                                                   f"dependency {blocked[0]} did not apply")
                    self._mark_skipped(step)
                    logger.warning(f"[skip] {step.describe()}: {blocked[0]} did not apply")
                    changed = True

    def _refresh_outputs(self, plan: Plan) -> None:
        """Recompute root outputs from the state that completed."""
        snapshot = self._snapshot
        outputs: dict[str, Any] = {}
        if not plan.destroy:
            for name, expr in self.graph.outputs.items():
                try:
                    outputs[name] = resolve(expr, snapshot.attribute)
                except KeyError:
                    logger.debug(f"Output '{name}' has no value yet")
        if outputs != snapshot.outputs:
            self._persist(lambda s: s.with_outputs(outputs))
