"""Graph module for stack-based provisioning.

Flattens a stack's resources and modules into graph nodes, binds every
expression reference to a node address, and computes traversal orderings
for create (dependencies first) and destroy (dependents first).

Node addresses:
- resource:      [module.<m>.]...<kind>.<name>
- module input:  module.<m>.var.<input>
- module output: module.<m>.output.<name>
"""

import heapq
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping, Optional

from engine.errors import GraphError, ValidationError
from engine.expressions import BoundRef, Expr, Literal, Ref, bind, evaluate, references, traverse
from stack import ModuleSpec, OutputSpec, Stack, StackBody, VariableDecl

logger = logging.getLogger(__name__)

RESOURCE = 'resource'
INPUT = 'input'
OUTPUT = 'output'


@dataclass
class GraphNode:
    """A node in the resource graph.

    Attributes:
        address: Unique node address
        node_type: RESOURCE, INPUT or OUTPUT
        position: Declaration order, used to break topological ties
        kind: Resource kind (resource nodes only)
        attributes: Bound attribute expressions (resource nodes only)
        value: Bound value expression (input/output nodes; None = use default)
        conditions: Bound count expressions, outermost module first
        declaration: Variable declaration backing an input node
        dependencies: Addresses this node must follow
        dependents: Addresses that follow this node
    """
    address: str
    node_type: str
    position: int
    kind: str = ''
    attributes: dict[str, Expr] = field(default_factory=dict)
    value: Optional[Expr] = None
    conditions: list[Expr] = field(default_factory=list)
    declaration: Optional[VariableDecl] = None
    dependencies: set[str] = field(default_factory=set)
    dependents: set[str] = field(default_factory=set)

    @property
    def is_resource(self) -> bool:
        return self.node_type == RESOURCE

    def expressions(self) -> list[Expr]:
        exprs = list(self.attributes.values()) + list(self.conditions)
        if self.value is not None:
            exprs.append(self.value)
        return exprs

    def __repr__(self) -> str:
        return f"GraphNode({self.address}, type={self.node_type})"


@dataclass
class _Scope:
    """A stack or module body and the address prefix of its nodes."""
    body: StackBody
    prefix: str

    @property
    def is_root(self) -> bool:
        return self.prefix == ''


def topological_sort(dependencies: Mapping[str, set[str]], priority: Mapping[str, int]) -> list[str]:
    """Kahn's algorithm with ties broken by ascending priority.

    Dependencies outside the mapping are ignored.

    Raises:
        GraphError: If the dependencies contain a cycle
    """
    indegree = {addr: 0 for addr in dependencies}
    dependents: dict[str, list[str]] = {addr: [] for addr in dependencies}
    for addr, deps in dependencies.items():
        for dep in deps:
            if dep in indegree:
                indegree[addr] += 1
                dependents[dep].append(addr)

    heap = [(priority.get(a, 0), a) for a, d in indegree.items() if d == 0]
    heapq.heapify(heap)
    ordered: list[str] = []
    while heap:
        _, addr = heapq.heappop(heap)
        ordered.append(addr)
        for child in dependents[addr]:
            indegree[child] -= 1
            if indegree[child] == 0:
                heapq.heappush(heap, (priority.get(child, 0), child))

    if len(ordered) != len(indegree):
        remaining = sorted(a for a, d in indegree.items() if d > 0)
        raise GraphError(f"Dependency cycle among: {', '.join(remaining)}", cycle=remaining)
    return ordered


class ResourceGraph:
    """Dependency graph built from a Stack and resolved variables.

    Provides ordered traversal for lifecycle operations:
    - create_order(): dependencies before dependents
    - destroy_order(): dependents before dependencies
    """

    def __init__(self, stack: Stack, variables: Mapping[str, Any]):
        """Build the graph.

        Args:
            stack: Loaded stack
            variables: Resolved root variables (used for count folding)

        Raises:
            GraphError: On unknown references or dependency cycles
            ValidationError: On missing or undeclared module inputs
        """
        self.stack = stack
        self.variables = variables
        self._nodes: dict[str, GraphNode] = {}
        self._scopes: dict[str, _Scope] = {}
        self._pending: dict[str, tuple[list, list]] = {}
        self.references: dict[str, list[BoundRef]] = {}
        self.outputs: dict[str, tuple[OutputSpec, Expr]] = {}

        root = _Scope(stack.body, '')
        self._register(root, conditions=[], extra_deps=[])
        self._bind_all()
        self._bind_outputs(root)
        self._detect_cycles()
        self._order = topological_sort(
            {a: n.dependencies for a, n in self._nodes.items()},
            {a: n.position for a, n in self._nodes.items()},
        )
        self._resource_positions: Optional[dict[str, int]] = None
        logger.debug(f"Built graph for stack '{stack.name}': {len(self._nodes)} nodes")

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    def _add(self, node: GraphNode, scope: _Scope) -> GraphNode:
        self._nodes[node.address] = node
        self._scopes[node.address] = scope
        return node

    def _register(self, scope: _Scope, conditions: list[tuple[Expr, _Scope]],
                  extra_deps: list[tuple[str, _Scope]]) -> None:
        """Create unbound nodes for a body and its modules.

        Conditions and explicit dependencies are carried as (raw, scope)
        pairs so each one is bound in the scope it was written in.
        """
        for res in scope.body.resources:
            node = self._add(GraphNode(
                address=scope.prefix + res.local_address,
                node_type=RESOURCE,
                position=len(self._nodes),
                kind=res.kind,
                attributes=dict(res.attributes),
            ), scope)
            self._pending[node.address] = (
                list(conditions) + ([(res.count, scope)] if res.count else []),
                list(extra_deps) + [(d, scope) for d in res.depends_on],
            )

        for mod in scope.body.modules:
            self._register_module(mod, scope, conditions, extra_deps)

    def _register_module(self, mod: ModuleSpec, parent: _Scope,
                         conditions: list[tuple[Expr, _Scope]],
                         extra_deps: list[tuple[str, _Scope]]) -> None:
        inner = _Scope(mod.body, f'{parent.prefix}module.{mod.name}.')
        mod_conditions = list(conditions) + ([(mod.count, parent)] if mod.count else [])
        mod_deps = list(extra_deps) + [(d, parent) for d in mod.depends_on]

        undeclared = sorted(set(mod.inputs) - set(mod.body.variables))
        if undeclared:
            raise ValidationError(
                f"{inner.prefix.rstrip('.')}: undeclared input(s): {', '.join(undeclared)}"
            )

        for name, decl in mod.body.variables.items():
            if name not in mod.inputs and not decl.has_default:
                raise ValidationError(
                    f"{inner.prefix.rstrip('.')}: missing required input '{name}'"
                )
            # Input expressions are written in the parent scope
            node = self._add(GraphNode(
                address=f'{inner.prefix}var.{name}',
                node_type=INPUT,
                position=len(self._nodes),
                value=mod.inputs.get(name),
                declaration=decl,
            ), parent)
            self._pending[node.address] = (list(mod_conditions), [])

        self._register(inner, mod_conditions, mod_deps)

        for name, out in mod.body.outputs.items():
            node = self._add(GraphNode(
                address=f'{inner.prefix}output.{name}',
                node_type=OUTPUT,
                position=len(self._nodes),
                value=out.value,
            ), inner)
            self._pending[node.address] = (list(mod_conditions), [])

    def _binder(self, scope: _Scope, where: str):
        """Return a function binding Refs written in ``scope``."""
        def _bind(ref: Ref) -> BoundRef:
            parts = ref.parts
            head = parts[0]
            if head == 'var' and len(parts) >= 2:
                name = parts[1]
                if name not in scope.body.variables:
                    raise GraphError(f"{where}: reference to undeclared variable '{ref.text}'", code='E201')
                if scope.is_root:
                    return BoundRef('variable', name, tuple(parts[2:]), ref.text)
                return BoundRef('node', f'{scope.prefix}var.{name}', tuple(parts[2:]), ref.text)
            if head == 'module' and len(parts) >= 3:
                mod = next((m for m in scope.body.modules if m.name == parts[1]), None)
                if mod is None or parts[2] not in mod.body.outputs:
                    raise GraphError(f"{where}: reference to unknown address '{ref.text}'", code='E201')
                address = f'{scope.prefix}module.{parts[1]}.output.{parts[2]}'
                return BoundRef('node', address, tuple(parts[3:]), ref.text)
            if len(parts) >= 2 and head not in ('var', 'module'):
                address = f'{scope.prefix}{parts[0]}.{parts[1]}'
                node = self._nodes.get(address)
                if node is not None and node.is_resource:
                    return BoundRef('node', address, tuple(parts[2:]), ref.text)
            raise GraphError(f"{where}: reference to unknown address '{ref.text}'", code='E201')
        return _bind

    def _explicit_targets(self, dep: str, scope: _Scope, where: str) -> list[str]:
        """Resolve a depends_on entry to resource addresses."""
        parts = dep.split('.')
        if len(parts) == 2 and parts[0] == 'module':
            prefix = f'{scope.prefix}module.{parts[1]}.'
            targets = [a for a, n in self._nodes.items() if n.is_resource and a.startswith(prefix)]
            if not any(m.name == parts[1] for m in scope.body.modules):
                raise GraphError(f"{where}: depends_on unknown module '{dep}'", code='E202')
            return targets
        address = f'{scope.prefix}{dep}'
        node = self._nodes.get(address)
        if len(parts) != 2 or node is None or not node.is_resource:
            raise GraphError(f"{where}: depends_on unknown address '{dep}'", code='E202')
        return [address]

    def _bind_all(self) -> None:
        """Bind expressions, fold variable-only counts and wire edges."""
        for address, node in self._nodes.items():
            scope = self._scopes[address]
            binder = self._binder(scope, address)
            pending_conditions, pending_deps = self._pending.pop(address)
            node.attributes = {k: bind(v, binder) for k, v in node.attributes.items()}
            if node.value is not None:
                node.value = bind(node.value, binder)

            node.conditions = [
                self._fold(bind(expr, self._binder(cond_scope, address)))
                for expr, cond_scope in pending_conditions
            ]

            refs = [r for e in node.expressions() for r in references(e)]
            self.references[address] = refs
            for ref in refs:
                if ref.scope == 'node' and ref.target != address:
                    node.dependencies.add(ref.target)
                elif ref.scope == 'node':
                    raise GraphError(f"Dependency cycle: {address} -> {address}", cycle=[address, address])

            for dep, dep_scope in pending_deps:
                node.dependencies.update(self._explicit_targets(dep, dep_scope, address))
            node.dependencies.discard(address)

        for address, node in self._nodes.items():
            for dep in node.dependencies:
                self._nodes[dep].dependents.add(address)

    def _fold(self, expr: Expr) -> Expr:
        """Constant-fold a count expression that only references variables."""
        refs = list(references(expr))
        if any(r.scope != 'variable' for r in refs):
            return expr
        value = evaluate(expr, lambda r: traverse(self.variables[r.target], r.path, r.text))
        return Literal(value)

    def _bind_outputs(self, root: _Scope) -> None:
        for name, out in root.body.outputs.items():
            bound = bind(out.value, self._binder(root, f'output.{name}'))
            self.outputs[name] = (out, bound)

    def _detect_cycles(self) -> None:
        """Iterative DFS with an explicit path; names the cycle's address sequence."""
        visited: set[str] = set()

        def _ordered(address: str) -> Iterator[str]:
            return iter(sorted(self._nodes[address].dependencies, key=lambda a: self._nodes[a].position))

        for root in self._nodes:
            if root in visited:
                continue
            visited.add(root)
            path = [root]
            on_path = {root}
            pending = [_ordered(root)]
            while pending:
                dep = next(pending[-1], None)
                if dep is None:
                    pending.pop()
                    on_path.discard(path.pop())
                    continue
                if dep in on_path:
                    cycle = path[path.index(dep):] + [dep]
                    raise GraphError(f"Dependency cycle: {' -> '.join(cycle)}", cycle=cycle)
                if dep not in visited:
                    visited.add(dep)
                    path.append(dep)
                    on_path.add(dep)
                    pending.append(_ordered(dep))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_node(self, address: str) -> GraphNode:
        """Get a node by address.

        Raises:
            KeyError: If address not found
        """
        return self._nodes[address]

    def __contains__(self, address: str) -> bool:
        return address in self._nodes

    @property
    def nodes(self) -> dict[str, GraphNode]:
        return dict(self._nodes)

    def create_order(self) -> list[GraphNode]:
        """Return all nodes with dependencies before dependents."""
        return [self._nodes[a] for a in self._order]

    def destroy_order(self) -> list[GraphNode]:
        """Return all nodes with dependents before dependencies.

        Reverse of create_order.
        """
        return list(reversed(self.create_order()))

    def resource_order(self) -> list[str]:
        """Resource addresses in create order."""
        return [a for a in self._order if self._nodes[a].is_resource]

    def resource_dependencies(self, address: str) -> set[str]:
        """Resource addresses a node depends on, looking through module inputs/outputs."""
        result: set[str] = set()
        seen: set[str] = set()
        pending = list(self._nodes[address].dependencies)
        while pending:
            dep = pending.pop()
            if dep in seen:
                continue
            seen.add(dep)
            node = self._nodes[dep]
            if node.is_resource:
                result.add(dep)
            else:
                pending.extend(node.dependencies)
        return result

    def resource_position(self, address: str) -> int:
        """Index of a resource within resource_order()."""
        if self._resource_positions is None:
            self._resource_positions = {a: i for i, a in enumerate(self.resource_order())}
        return self._resource_positions[address]
