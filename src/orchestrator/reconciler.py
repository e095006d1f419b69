"""State reconciliation: desired graph vs. recorded snapshot.

For every declared node the reconciler resolves the desired attributes
against the snapshot and decides one action:

    create   no state entry
    replace  tainted entry, type changed, or a changed attribute that
             cannot be updated in place
    update   attributes differ
    no-op    attributes equal

State entries with no declaration are destroyed. Optionally each state
entry is read back from its provider to report drift.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import ProviderError, UnresolvedReferenceError, ValidationError
from expressions import UNKNOWN, changed_keys, get_path, resolve, split_reference, to_jsonable
from orchestrator.graph import ResourceGraph, ResourceNode
from orchestrator.state import StateSnapshot

logger = logging.getLogger(__name__)

ACTIONS = ('create', 'update', 'replace', 'destroy', 'no-op')

# Producer actions whose attribute values are not known until apply
_PENDING_ACTIONS = ('create', 'replace')


@dataclass
class ResourceChange:
    """Planned action for one resource (or one deposed instance)."""
    address: str
    type: str
    action: str
    changed: list[str] = field(default_factory=list)
    reason: str = ''
    prior: Optional[dict] = None
    desired: Optional[dict] = None
    deposed: bool = False

    def __post_init__(self):
        if self.action not in ACTIONS:
            raise ValueError(f"Unknown action '{self.action}'")

    @property
    def key(self) -> str:
        return f'{self.address} (deposed)' if self.deposed else self.address

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'address': self.address,
            'type': self.type,
            'action': self.action,
        }
        if self.deposed:
            d['deposed'] = True
        if self.changed:
            d['changed'] = list(self.changed)
        if self.reason:
            d['reason'] = self.reason
        if self.prior is not None:
            d['prior'] = self.prior
        if self.desired is not None:
            d['desired'] = to_jsonable(self.desired)
        return d


@dataclass
class DriftEntry:
    """A resource whose provider state no longer matches the snapshot."""
    address: str
    kind: str  # 'modified' or 'deleted'
    changed: list[str] = field(default_factory=list)
    expected: dict = field(default_factory=dict)
    actual: Optional[dict] = None

    def to_dict(self) -> dict:
        return {
            'address': self.address,
            'kind': self.kind,
            'changed': list(self.changed),
            'expected': self.expected,
            'actual': self.actual,
        }


@dataclass
class Diff:
    """All resource changes (no-ops included) and detected drift."""
    changes: list[ResourceChange] = field(default_factory=list)
    drift: list[DriftEntry] = field(default_factory=list)

    def get(self, address: str, deposed: bool = False) -> Optional[ResourceChange]:
        for change in self.changes:
            if change.address == address and change.deposed == deposed:
                return change
        return None

    @property
    def actionable(self) -> list[ResourceChange]:
        return [c for c in self.changes if c.action != 'no-op']

    @property
    def has_changes(self) -> bool:
        return bool(self.actionable)

    def summary(self) -> dict[str, int]:
        counts = {action: 0 for action in ACTIONS}
        for change in self.changes:
            counts[change.action] += 1
        return counts


class Reconciler:
    """Computes the Diff between a ResourceGraph and a StateSnapshot."""

    def __init__(self, graph: ResourceGraph, snapshot: StateSnapshot, registry=None):
        """
        Args:
            graph: Desired resources
            snapshot: Recorded state
            registry: ProviderRegistry; supplies replace rules and drift reads
        """
        self.graph = graph
        self.snapshot = snapshot
        self.registry = registry

    def diff(self, destroy: bool = False, refresh: bool = True) -> Diff:
        """Compute the changes needed to converge.

        Args:
            destroy: Plan destruction of every recorded resource
            refresh: Read providers to detect drift

        Raises:
            ValidationError: If a prevent_destroy resource would be destroyed
            UnresolvedReferenceError: If a reference names an attribute the
                snapshot does not have
        """
        drift = self.detect_drift() if refresh and self.registry is not None else []

        if destroy:
            changes = [
                ResourceChange(address=a, type=entry.type, action='destroy',
                               prior=entry.inputs, reason='destroy requested')
                for a, entry in self.snapshot.resources.items()
            ]
        else:
            changes = self._declared_changes()
            changes.extend(
                ResourceChange(address=a, type=entry.type, action='destroy',
                               prior=entry.inputs, reason='no longer declared')
                for a, entry in self.snapshot.resources.items()
                if a not in self.graph
            )

        changes.extend(
            ResourceChange(address=a, type=entry.type, action='destroy', deposed=True,
                           reason='deposed by an earlier replace')
            for a, entry in self.snapshot.resources.items()
            if entry.deposed is not None
        )

        self._check_prevent_destroy(changes)
        diff = Diff(changes=changes, drift=drift)
        summary = diff.summary()
        logger.debug(
            f"Diff: {summary['create']} create, {summary['update']} update, "
            f"{summary['replace']} replace, {summary['destroy']} destroy, "
            f"{summary['no-op']} unchanged, {len(drift)} drifted"
        )
        return diff

    def _declared_changes(self) -> list[ResourceChange]:
        decided: dict[str, ResourceChange] = {}
        for node in self.graph.topological_order():
            decided[node.address] = self._diff_node(node, decided)
        # Report in declaration order
        return [decided[node.address] for node in self.graph.nodes]

    def _lookup(self, body: str, decided: dict, where: str) -> Any:
        address, path = split_reference(body)
        change = decided[address]
        if change.action in _PENDING_ACTIONS:
            return UNKNOWN
        if change.action == 'update':
            # Provider-assigned values may change on update
            if not path or path[0] not in change.desired:
                return UNKNOWN
            try:
                return get_path(change.desired, path)
            except KeyError:
                raise UnresolvedReferenceError(body, where)
        try:
            return self.snapshot.attribute(body)
        except KeyError:
            raise UnresolvedReferenceError(body, where)

    def _diff_node(self, node: ResourceNode, decided: dict) -> ResourceChange:
        desired = resolve(node.attributes,
                          lambda body: self._lookup(body, decided, node.address))
        prior = self.snapshot.get(node.address)

        def change(action: str, **kw) -> ResourceChange:
            return ResourceChange(
                address=node.address, type=node.type, action=action, desired=desired,
                prior=prior.inputs if prior else None, **kw,
            )

        if prior is None:
            return change('create')
        if prior.tainted:
            return change('replace', reason='tainted')
        if prior.type != node.type:
            return change('replace', reason=f"type changed from {prior.type}")

        changed = changed_keys(desired, prior.inputs, frozenset(node.lifecycle.ignore_changes))
        if not changed:
            return change('no-op')

        forced = [k for k in changed if k in node.lifecycle.replace_on_change]
        if self.registry is not None and self.registry.has(node.type):
            schema = self.registry.schema(node.type)
            if schema.requires_replace(changed):
                forced = forced or [k for k in changed if k in schema.force_new] or changed
        if forced:
            return change('replace', changed=changed,
                          reason=f"{', '.join(forced)} forces replacement")
        return change('update', changed=changed)

    def _check_prevent_destroy(self, changes: list[ResourceChange]) -> None:
        blocked = []
        for change in changes:
            if change.deposed or change.action not in ('destroy', 'replace'):
                continue
            if change.address in self.graph and \
                    self.graph.get_node(change.address).lifecycle.prevent_destroy:
                blocked.append(f"{change.address} ({change.action})")
        if blocked:
            raise ValidationError(
                f"Plan would destroy resources with prevent_destroy: {', '.join(blocked)}"
            )

    def detect_drift(self) -> list[DriftEntry]:
        """Read every recorded resource back from its provider.

        Read failures are logged and skipped; they are not drift.
        """
        drift: list[DriftEntry] = []
        for address, entry in self.snapshot.resources.items():
            if not self.registry.has(entry.type):
                logger.warning(f"[refresh] {address}: no provider for '{entry.type}', skipping")
                continue
            provider = self.registry.get(entry.type)
            try:
                actual = provider.read(dict(entry.outputs))
            except ProviderError as e:
                logger.warning(f"[refresh] {address}: read failed: {e}")
                continue
            if actual is None:
                logger.info(f"[refresh] {address}: deleted outside the engine")
                drift.append(DriftEntry(address=address, kind='deleted', expected=entry.outputs))
                continue
            changed = changed_keys(actual, entry.outputs)
            if changed:
                logger.info(f"[refresh] {address}: modified ({', '.join(changed)})")
                drift.append(DriftEntry(address=address, kind='modified', changed=changed,
                                        expected=entry.outputs, actual=actual))
        return drift
