"""Resource graph builder.

Turns Declarations into a validated graph of ResourceNodes:

- module calls are inlined: a module's resources become nodes addressed
  module.<name>.<type>.<name>, its variables are replaced by the caller's
  input expressions, and module.<name>.<output> references in the caller
  are replaced by the module's output expressions
- every ${type.name.attr} reference becomes an implicit edge, every
  depends_on entry an explicit edge
- the graph is checked for dangling edges and cycles before anyone plans
  against it
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from common import CyclicDependencyError, UnresolvedReferenceError, ValidationError
from declarations import Declarations, Lifecycle
from expressions import (
    REFERENCE_RE,
    find_references,
    get_path,
    rewrite,
    split_reference,
)

logger = logging.getLogger(__name__)

NODE_STATUSES = ('planned', 'applying', 'applied', 'failed', 'tainted', 'skipped')


@dataclass
class ResourceNode:
    """A resource in the dependency graph.

    Attributes:
        type: Resource type
        name: Logical name within its module
        module_path: Enclosing module names, outermost first
        attributes: Attribute expressions, references rewritten to absolute addresses
        depends_on: Explicit dependency addresses
        lifecycle: Lifecycle policy
        index: Declaration order, used to break ties deterministically
        status: Lifecycle status (see NODE_STATUSES)
    """
    type: str
    name: str
    module_path: tuple = ()
    attributes: dict = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    lifecycle: Lifecycle = field(default_factory=Lifecycle)
    index: int = 0
    status: str = 'planned'
    _resolved: Optional[dict] = field(default=None, repr=False)

    @property
    def address(self) -> str:
        prefix = ''.join(f'module.{m}.' for m in self.module_path)
        return f'{prefix}{self.type}.{self.name}'

    @property
    def resolved(self) -> Optional[dict]:
        """Attribute values as last resolved for apply."""
        return self._resolved

    def resolve(self, values: dict) -> None:
        """Record the resolved attributes this node is applied with.

        Raises:
            RuntimeError: If the node is already applied
        """
        if self.status == 'applied':
            raise RuntimeError(f"'{self.address}' is applied; its attributes are final")
        self._resolved = values

    def mark(self, status: str) -> None:
        if status not in NODE_STATUSES:
            raise ValueError(f"Unknown node status '{status}'")
        self.status = status

    def __repr__(self) -> str:
        return f"ResourceNode({self.address}, status={self.status})"


@dataclass(frozen=True)
class DependencyEdge:
    """consumer depends on producer."""
    consumer: str
    producer: str
    kind: str  # 'implicit' (interpolation) or 'explicit' (depends_on)


def _module_prefix(module_path: tuple) -> str:
    return ''.join(f'module.{m}.' for m in module_path)


def _index_expression(value: Any, rest: list[str], body: str, where: str) -> Any:
    """Apply an attribute path to a variable or module output value."""
    if not rest:
        return value
    if isinstance(value, str):
        whole = REFERENCE_RE.fullmatch(value)
        if whole:
            return '${' + '.'.join([whole.group(1), *rest]) + '}'
    if find_references(value):
        raise ValidationError(f"Cannot index into computed value '{body}' in '{where}'")
    try:
        return get_path(value, rest)
    except KeyError:
        raise UnresolvedReferenceError(body, where)


class _ScopeBuilder:
    """Inlines one declaration scope (root or module body) into the node list."""

    def __init__(self, decl: Declarations, module_path: tuple, var_values: dict,
                 nodes: list):
        self.decl = decl
        self.module_path = module_path
        self.prefix = _module_prefix(module_path)
        self.var_values = var_values
        self.nodes = nodes
        self.local_addresses = {r.address for r in decl.resources}
        self.modules = {m.name: m for m in decl.modules}
        self._module_outputs: dict[str, dict] = {}
        self._module_addresses: dict[str, list[str]] = {}
        self._in_progress: list[str] = []

    def normalize(self, value: Any, where: str) -> Any:
        """Rewrite references in value to absolute resource references."""

        def _replace(body: str) -> Any:
            parts = body.split('.')
            if parts[0] == 'var':
                if len(parts) < 2 or parts[1] not in self.var_values:
                    raise UnresolvedReferenceError(body, where)
                return _index_expression(self.var_values[parts[1]], parts[2:], body, where)
            if parts[0] == 'module':
                if len(parts) < 3 or parts[1] not in self.modules:
                    raise UnresolvedReferenceError(body, where)
                outputs = self.module_outputs(parts[1])
                if parts[2] not in outputs:
                    raise UnresolvedReferenceError(body, where)
                return _index_expression(outputs[parts[2]], parts[3:], body, where)
            if len(parts) < 2 or f'{parts[0]}.{parts[1]}' not in self.local_addresses:
                raise UnresolvedReferenceError(body, where)
            return '${' + self.prefix + body + '}'

        return rewrite(value, _replace)

    def module_outputs(self, name: str) -> dict:
        """Inline module `name` (once) and return its normalized outputs."""
        if name in self._module_outputs:
            return self._module_outputs[name]
        if name in self._in_progress:
            cycle = self._in_progress[self._in_progress.index(name):] + [name]
            raise CyclicDependencyError([f'{self.prefix}module.{m}' for m in cycle])

        self._in_progress.append(name)
        module = self.modules[name]
        where = f'{self.prefix}module.{name}'
        body = module.body

        unknown = set(module.inputs) - set(body.variables)
        if unknown:
            raise ValidationError(f"Module '{where}' has no variables {sorted(unknown)}")

        values: dict[str, Any] = {}
        for var_name, var in body.variables.items():
            if var_name in module.inputs:
                value = self.normalize(module.inputs[var_name], where)
                if not find_references(value):
                    var.check(value)
                values[var_name] = value
            elif var.has_default:
                values[var_name] = var.default
            else:
                raise ValidationError(f"Module '{where}' missing input for variable '{var_name}'")

        start = len(self.nodes)
        child = _ScopeBuilder(body, self.module_path + (name,), values, self.nodes)
        outputs = child.build()
        self._in_progress.remove(name)

        self._module_outputs[name] = outputs
        self._module_addresses[name] = [n.address for n in self.nodes[start:]]
        return outputs

    def _expand_depends_on(self, entries: list[str], where: str) -> list[str]:
        addresses: list[str] = []
        for entry in entries:
            parts = entry.split('.')
            if parts[0] == 'module' and len(parts) == 2 and parts[1] in self.modules:
                self.module_outputs(parts[1])
                addresses.extend(self._module_addresses[parts[1]])
            elif entry in self.local_addresses:
                addresses.append(self.prefix + entry)
            else:
                raise UnresolvedReferenceError(entry, where)
        return addresses

    def build(self) -> dict:
        """Inline this scope; return its outputs as normalized expressions."""
        # Modules are inlined on first use; the rest in declaration order
        for res in self.decl.resources:
            where = self.prefix + res.address
            attributes = self.normalize(res.attributes, where)
            depends_on = self._expand_depends_on(res.depends_on, where)
            self.nodes.append(ResourceNode(
                type=res.type,
                name=res.name,
                module_path=self.module_path,
                attributes=attributes,
                depends_on=depends_on,
                lifecycle=res.lifecycle,
                index=len(self.nodes),
            ))
        for name in self.modules:
            self.module_outputs(name)
        return {
            out_name: self.normalize(expr, f'{self.prefix}output.{out_name}')
            for out_name, expr in self.decl.outputs.items()
        }


class ResourceGraph:
    """Validated dependency graph of ResourceNodes.

    Edges point from consumer to producer; a producer must be applied
    before its consumers and destroyed after them.
    """

    def __init__(self, nodes: list[ResourceNode], outputs: Optional[dict] = None,
                 variables: Optional[dict] = None, name: str = ''):
        """Build edges and validate.

        Raises:
            ValidationError: On duplicate addresses
            UnresolvedReferenceError: If an edge points at a missing node
            CyclicDependencyError: If the graph has a cycle
        """
        self.name = name
        self.outputs = dict(outputs or {})
        self.variables = dict(variables or {})
        self._nodes: dict[str, ResourceNode] = {}
        for node in sorted(nodes, key=lambda n: n.index):
            if node.address in self._nodes:
                raise ValidationError(f"Duplicate resource: '{node.address}'")
            self._nodes[node.address] = node

        self._edges: list[DependencyEdge] = []
        self._deps: dict[str, list[str]] = {a: [] for a in self._nodes}
        self._dependents: dict[str, list[str]] = {a: [] for a in self._nodes}
        for node in self._nodes.values():
            for body in find_references(node.attributes):
                self._add_edge(node.address, body, 'implicit')
            for producer in node.depends_on:
                self._add_edge(node.address, producer, 'explicit')

        for out_name, expr in self.outputs.items():
            for body in find_references(expr):
                address = self._reference_address(body, f'output.{out_name}')
                if address not in self._nodes:
                    raise UnresolvedReferenceError(body, f'output.{out_name}')

        self._check_cycles()
        logger.debug(f"Built graph with {len(self._nodes)} nodes and {len(self._edges)} edges")

    @staticmethod
    def _reference_address(body: str, where: str) -> str:
        try:
            address, _ = split_reference(body)
        except ValueError:
            raise UnresolvedReferenceError(body, where)
        return address

    def _add_edge(self, consumer: str, body: str, kind: str) -> None:
        producer = self._reference_address(body, consumer)
        if producer not in self._nodes:
            raise UnresolvedReferenceError(body, consumer)
        if producer in self._deps[consumer]:
            return
        self._edges.append(DependencyEdge(consumer=consumer, producer=producer, kind=kind))
        self._deps[consumer].append(producer)
        self._dependents[producer].append(consumer)

    def _check_cycles(self) -> None:
        """Depth-first search for back edges.

        Raises:
            CyclicDependencyError: Naming the cycle in dependency direction
        """
        white, gray, black = 0, 1, 2
        color = {a: white for a in self._nodes}

        for start in self._nodes:
            if color[start] != white:
                continue
            path: list[str] = [start]
            stack = [iter(self._deps[start])]
            color[start] = gray
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    color[path.pop()] = black
                    stack.pop()
                    continue
                if color[nxt] == gray:
                    cycle = path[path.index(nxt):] + [nxt]
                    raise CyclicDependencyError(cycle)
                if color[nxt] == white:
                    color[nxt] = gray
                    path.append(nxt)
                    stack.append(iter(self._deps[nxt]))

    @classmethod
    def build(cls, declarations: Declarations, variables: Optional[dict] = None,
              registry=None) -> 'ResourceGraph':
        """Build a validated graph from declarations.

        Args:
            declarations: Root declarations
            variables: Root variable overrides (defaults fill the rest)
            registry: Optional ProviderRegistry used to check types and attributes

        Raises:
            ValidationError: On any invalid declaration, reference or cycle
        """
        values = declarations.variable_values(variables)
        nodes: list[ResourceNode] = []
        outputs = _ScopeBuilder(declarations, (), values, nodes).build()
        graph = cls(nodes, outputs=outputs, variables=values, name=declarations.name)
        if registry is not None:
            graph.validate_schemas(registry)
        return graph

    def validate_schemas(self, registry) -> None:
        """Check every node against its provider schema.

        Raises:
            ValidationError: Listing every schema violation found
            UnresolvedReferenceError: If a reference names an attribute the
                producer does not have
        """
        errors: list[str] = []
        for node in self._nodes.values():
            if not registry.has(node.type):
                errors.append(f"'{node.address}' has unknown type '{node.type}'")
                continue
            errors.extend(registry.schema(node.type).validate(node.attributes, node.address))
        if errors:
            raise ValidationError('; '.join(errors))

        for node in self._nodes.values():
            for body in find_references(node.attributes):
                address, path = split_reference(body)
                if not path:
                    continue
                producer = self._nodes[address]
                if path[0] in producer.attributes:
                    continue
                if not registry.schema(producer.type).has_attribute(path[0]):
                    raise UnresolvedReferenceError(body, node.address)

    @property
    def nodes(self) -> list[ResourceNode]:
        """Nodes in declaration order."""
        return list(self._nodes.values())

    @property
    def edges(self) -> list[DependencyEdge]:
        return list(self._edges)

    @property
    def addresses(self) -> list[str]:
        return list(self._nodes)

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def get_node(self, address: str) -> ResourceNode:
        """Get a node by address.

        Raises:
            KeyError: If address not found
        """
        return self._nodes[address]

    def dependencies(self, address: str) -> list[str]:
        """Direct producers of a node."""
        return list(self._deps[address])

    def dependents(self, address: str) -> list[str]:
        """Direct consumers of a node."""
        return list(self._dependents[address])

    def transitive_dependents(self, address: str) -> list[str]:
        """All nodes that depend on address directly or indirectly."""
        seen: list[str] = []
        queue = list(self._dependents[address])
        while queue:
            current = queue.pop(0)
            if current in seen:
                continue
            seen.append(current)
            queue.extend(self._dependents[current])
        return seen

    def topological_order(self) -> list[ResourceNode]:
        """Nodes with every dependency before its dependents.

        Ties are broken by declaration order.
        """
        remaining = {a: len(deps) for a, deps in self._deps.items()}
        ready = [(self._nodes[a].index, a) for a, n in remaining.items() if n == 0]
        heapq.heapify(ready)
        ordered: list[ResourceNode] = []
        while ready:
            _, address = heapq.heappop(ready)
            ordered.append(self._nodes[address])
            for consumer in self._dependents[address]:
                remaining[consumer] -= 1
                if remaining[consumer] == 0:
                    heapq.heappush(ready, (self._nodes[consumer].index, consumer))
        return ordered
