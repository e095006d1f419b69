"""Plan scheduling: order a Diff into executable steps.

Each non-no-op change becomes one or two PlanSteps:

    create   create:<addr>
    update   update:<addr>
    destroy  destroy:<addr>
    replace  destroy:<addr>:replace then create:<addr>:replace, or with
             create_before_destroy create:<addr>:replace then
             destroy:<addr>:deposed:replace (the old instance is deposed)

plus destroy:<addr>:deposed for an instance left deposed by an earlier run.

Ordering rules:
- create/update steps wait for the create/update steps of their dependencies
- destroy steps wait for the destroy steps of their dependents, and for the
  updates of nodes that depended on them but no longer do
- every other step of an address waits for the destroy of its leftover
  deposed instance
- create_before_destroy spreads to the replaced dependencies of a
  create_before_destroy node, otherwise the two orders would deadlock
"""

import heapq
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from common import CyclicDependencyError, PlanConflictError
from orchestrator.graph import ResourceGraph
from orchestrator.reconciler import Diff, DriftEntry, ResourceChange
from orchestrator.state import StateSnapshot

logger = logging.getLogger(__name__)

STEP_ACTIONS = ('create', 'update', 'destroy')


def step_key(action: str, address: str, deposed: bool = False, replace: bool = False) -> str:
    parts = [action, address]
    if deposed:
        parts.append('deposed')
    if replace:
        parts.append('replace')
    return ':'.join(parts)


@dataclass
class PlanStep:
    """One executable provider operation.

    Attributes:
        address: Resource address
        type: Resource type
        action: create, update or destroy
        replace: Part of a replace
        deposed: Operates on the deposed (old) instance
        create_before_destroy: Replace creates the new instance first
        deps: Keys of the steps this one waits for
        index: Position in the plan's execution order
        reason: Why the step is needed
    """
    address: str
    type: str
    action: str
    replace: bool = False
    deposed: bool = False
    create_before_destroy: bool = False
    deps: list[str] = field(default_factory=list)
    index: int = 0
    reason: str = ''

    def __post_init__(self):
        if self.action not in STEP_ACTIONS:
            raise ValueError(f"Unknown step action '{self.action}'")

    @property
    def key(self) -> str:
        return step_key(self.action, self.address, self.deposed, self.replace)

    def describe(self) -> str:
        text = f"{self.action} {self.address}"
        if self.deposed:
            text += ' (deposed)'
        elif self.replace:
            text += ' (replace)'
        return text

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'address': self.address,
            'type': self.type,
            'action': self.action,
            'deps': list(self.deps),
            'index': self.index,
        }
        if self.replace:
            d['replace'] = True
        if self.deposed:
            d['deposed'] = True
        if self.create_before_destroy:
            d['create_before_destroy'] = True
        if self.reason:
            d['reason'] = self.reason
        return d


@dataclass
class Plan:
    """Ordered, read-only set of steps computed against one state serial.

    A plan is consumed by exactly one apply.
    """
    steps: list[PlanStep] = field(default_factory=list)
    changes: list[ResourceChange] = field(default_factory=list)
    drift: list[DriftEntry] = field(default_factory=list)
    waves: list[list[str]] = field(default_factory=list)
    destroy: bool = False
    state_lineage: str = ''
    state_serial: int = 0
    created_at: float = field(default_factory=time.time)
    _consumed: bool = field(default=False, repr=False)
    _consume_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def has_changes(self) -> bool:
        return bool(self.steps)

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> None:
        """Mark the plan as applied.

        Raises:
            PlanConflictError: If the plan was already applied
        """
        with self._consume_lock:
            if self._consumed:
                raise PlanConflictError("Plan has already been applied; create a new plan")
            self._consumed = True

    def get_step(self, key: str) -> PlanStep:
        """Get a step by key.

        Raises:
            KeyError: If no step has that key
        """
        for step in self.steps:
            if step.key == key:
                return step
        raise KeyError(key)

    def summary(self) -> dict[str, int]:
        counts = {'create': 0, 'update': 0, 'replace': 0, 'destroy': 0, 'no-op': 0}
        for change in self.changes:
            counts[change.action] += 1
        return counts

    def to_dict(self) -> dict:
        return {
            'destroy': self.destroy,
            'state_lineage': self.state_lineage,
            'state_serial': self.state_serial,
            'summary': self.summary(),
            'changes': [c.to_dict() for c in self.changes],
            'steps': [s.to_dict() for s in self.steps],
            'waves': [list(w) for w in self.waves],
            'drift': [d.to_dict() for d in self.drift],
        }


class Scheduler:
    """Turns a Diff into a dependency-ordered Plan."""

    def __init__(self, graph: ResourceGraph, snapshot: StateSnapshot):
        self.graph = graph
        self.snapshot = snapshot

    def _order_key(self, address: str) -> int:
        if address in self.graph:
            return self.graph.get_node(address).index
        # Removed resources after declared ones, in snapshot order
        addresses = self.snapshot.addresses
        position = addresses.index(address) if address in addresses else len(addresses)
        return len(self.graph) + position

    def _old_dependencies(self, address: str) -> list[str]:
        entry = self.snapshot.get(address)
        return list(entry.dependencies) if entry else []

    def _new_dependencies(self, address: str) -> list[str]:
        return self.graph.dependencies(address) if address in self.graph else []

    def _create_before_destroy(self, changes: list[ResourceChange]) -> set[str]:
        # A deposed instance is destroyed by the current type's provider,
        # so a type change always destroys first
        replaced = {
            c.address for c in changes
            if c.action == 'replace' and self.snapshot.get(c.address) is not None
            and self.snapshot.get(c.address).type == c.type
        }
        cbd = {a for a in replaced if self.graph.get_node(a).lifecycle.create_before_destroy}
        queue = list(cbd)
        while queue:
            for dep in self.graph.dependencies(queue.pop()):
                if dep in replaced and dep not in cbd:
                    logger.debug(f"{dep} replaced before a create_before_destroy dependent, "
                                 "creating its replacement first")
                    cbd.add(dep)
                    queue.append(dep)
        return cbd

    def _expand(self, changes: list[ResourceChange]) -> list[PlanStep]:
        cbd = self._create_before_destroy(changes)
        steps: list[PlanStep] = []
        for change in changes:
            base = dict(address=change.address, type=change.type, reason=change.reason)
            if change.action in ('create', 'update'):
                steps.append(PlanStep(action=change.action, **base))
            elif change.action == 'destroy':
                steps.append(PlanStep(action='destroy', deposed=change.deposed, **base))
            elif change.action == 'replace':
                first_create = change.address in cbd
                create = PlanStep(action='create', replace=True,
                                  create_before_destroy=first_create, **base)
                destroy = PlanStep(action='destroy', replace=True, deposed=first_create,
                                   create_before_destroy=first_create, **base)
                steps.extend([create, destroy] if first_create else [destroy, create])
        return steps

    def _link(self, steps: list[PlanStep]) -> None:
        by_address: dict[str, list[PlanStep]] = {}
        for step in steps:
            by_address.setdefault(step.address, []).append(step)

        def create_part(address: str) -> Optional[PlanStep]:
            for s in by_address.get(address, []):
                if s.action in ('create', 'update'):
                    return s
            return None

        def destroy_part(address: str) -> Optional[PlanStep]:
            for s in by_address.get(address, []):
                if s.action == 'destroy' and (s.replace or not s.deposed):
                    return s
            return None

        def leftover_deposed(address: str) -> Optional[PlanStep]:
            for s in by_address.get(address, []):
                if s.action == 'destroy' and s.deposed and not s.replace:
                    return s
            return None

        # Former and current dependents of every address
        dependents: dict[str, set[str]] = {}
        for address in set(self.snapshot.addresses) | set(self.graph.addresses):
            for dep in self._old_dependencies(address) + self._new_dependencies(address):
                dependents.setdefault(dep, set()).add(address)

        def wait(step: PlanStep, other: Optional[PlanStep]) -> None:
            if other is not None and other is not step and other.key not in step.deps:
                step.deps.append(other.key)

        for step in steps:
            leftover = leftover_deposed(step.address)
            if step is not leftover:
                wait(step, leftover)

            if step.action in ('create', 'update'):
                for dep in self._new_dependencies(step.address):
                    wait(step, create_part(dep))
                if step.replace and not step.create_before_destroy:
                    wait(step, destroy_part(step.address))
                continue

            if step is leftover:
                continue
            if step.create_before_destroy:
                wait(step, create_part(step.address))
            for dependent in sorted(dependents.get(step.address, ()), key=self._order_key):
                wait(step, destroy_part(dependent))
                still_depends = step.address in self._new_dependencies(dependent)
                if step.create_before_destroy or not still_depends:
                    wait(step, create_part(dependent))

    def _sort(self, steps: list[PlanStep]) -> list[PlanStep]:
        """Kahn's algorithm, ties broken by declaration order.

        Raises:
            CyclicDependencyError: If steps wait on each other
        """
        by_key = {s.key: s for s in steps}
        remaining = {s.key: len(s.deps) for s in steps}
        waiters: dict[str, list[str]] = {k: [] for k in by_key}
        for s in steps:
            for dep in s.deps:
                waiters[dep].append(s.key)

        def priority(key: str) -> tuple:
            return (self._order_key(by_key[key].address), key)

        ready = [priority(k) for k, n in remaining.items() if n == 0]
        heapq.heapify(ready)
        ordered: list[PlanStep] = []
        while ready:
            _, key = heapq.heappop(ready)
            ordered.append(by_key[key])
            for waiter in waiters[key]:
                remaining[waiter] -= 1
                if remaining[waiter] == 0:
                    heapq.heappush(ready, priority(waiter))

        if len(ordered) != len(steps):
            stuck = [k for k, n in remaining.items() if n > 0]
            raise CyclicDependencyError(self._find_cycle(stuck, by_key))
        for i, step in enumerate(ordered):
            step.index = i
        return ordered

    @staticmethod
    def _find_cycle(stuck: list[str], by_key: dict[str, PlanStep]) -> list[str]:
        path: list[str] = []
        current = stuck[0]
        while current not in path:
            path.append(current)
            current = next(d for d in by_key[current].deps if d in stuck)
        return path[path.index(current):] + [current]

    @staticmethod
    def _waves(ordered: list[PlanStep]) -> list[list[str]]:
        """Group steps by dependency depth.

        Raises:
            PlanConflictError: If one wave touches an address twice
        """
        level: dict[str, int] = {}
        waves: list[list[PlanStep]] = []
        for step in ordered:
            depth = max((level[d] + 1 for d in step.deps), default=0)
            level[step.key] = depth
            while len(waves) <= depth:
                waves.append([])
            waves[depth].append(step)

        for i, wave in enumerate(waves):
            seen: set[str] = set()
            for step in wave:
                if step.address in seen:
                    raise PlanConflictError(
                        f"Wave {i} has concurrent steps on '{step.address}'"
                    )
                seen.add(step.address)
        return [[s.key for s in wave] for wave in waves]

    def schedule(self, diff: Diff, destroy: bool = False) -> Plan:
        """Build the plan for a diff.

        Raises:
            CyclicDependencyError: If the steps cannot be ordered
            PlanConflictError: If two steps would touch one address concurrently
        """
        steps = self._expand(diff.actionable)
        self._link(steps)
        ordered = self._sort(steps)
        waves = self._waves(ordered)
        plan = Plan(
            steps=ordered,
            changes=list(diff.changes),
            drift=list(diff.drift),
            waves=waves,
            destroy=destroy,
            state_lineage=self.snapshot.lineage,
            state_serial=self.snapshot.serial,
        )
        logger.debug(f"Scheduled {len(ordered)} steps in {len(waves)} waves")
        return plan
