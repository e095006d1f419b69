"""Declarative orchestration: graph, reconcile, schedule, apply."""

from orchestrator.engine import Orchestrator
from orchestrator.executor import ApplyExecutor, ApplyResult
from orchestrator.graph import DependencyEdge, ResourceGraph, ResourceNode
from orchestrator.reconciler import Diff, DriftEntry, Reconciler, ResourceChange
from orchestrator.scheduler import Plan, PlanStep, Scheduler
from orchestrator.state import (
    LocalStateBackend,
    MemoryStateBackend,
    ResourceState,
    StateBackend,
    StateSnapshot,
)

__all__ = [
    'Orchestrator',
    'ApplyExecutor',
    'ApplyResult',
    'DependencyEdge',
    'ResourceGraph',
    'ResourceNode',
    'Diff',
    'DriftEntry',
    'Reconciler',
    'ResourceChange',
    'Plan',
    'PlanStep',
    'Scheduler',
    'LocalStateBackend',
    'MemoryStateBackend',
    'ResourceState',
    'StateBackend',
    'StateSnapshot',
]
