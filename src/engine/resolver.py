"""Expression resolver: materialize graph nodes into concrete values.

Nodes are evaluated in the graph's create order, so every reference an
expression makes has already been materialized. Each node resolves to a
tagged variant:

- Present(value): attribute map for resources, a single value for module
  inputs and outputs
- Absent: a count condition resolved to 0; references to it yield ABSENT

What a resource exposes to downstream references depends on prior state.
If the state holds the resource and its last-applied config equals the
desired attributes, the recorded provider attributes (id and friends) are
visible too. Otherwise only the desired attributes are known and anything
else reads as UNKNOWN until the executor commits the resource.
"""

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union

from engine.errors import EngineError, ValidationError
from engine.expressions import ABSENT, UNKNOWN, BoundRef, Expr, contains_unknown, evaluate, traverse
from engine.graph import INPUT, GraphNode, ResourceGraph
from engine.state import StateRecord, StateSnapshot
from engine.variables import check_value

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Present:
    """Node is included; value is its materialized definition."""
    value: Any

    @property
    def is_present(self) -> bool:
        return True


@dataclass(frozen=True)
class Absent:
    """Node excluded by a count condition of 0."""

    @property
    def is_present(self) -> bool:
        return False


NodeResult = Union[Present, Absent]


class ExpressionResolver:
    """Evaluates bound expressions against materialized upstream nodes."""

    def __init__(self, graph: ResourceGraph, variables: Mapping[str, Any],
                 state: Optional[StateSnapshot] = None):
        """Initialize the resolver.

        Args:
            graph: Built resource graph
            variables: Resolved root variables
            state: Prior state snapshot; None means nothing applied yet
        """
        self.graph = graph
        self.variables = variables
        self.state = state
        self.results: dict[str, NodeResult] = {}
        self._exposed: dict[str, dict] = {}
        self._settled: set[str] = set()

    def resolve(self) -> dict[str, NodeResult]:
        """Materialize every node in create order.

        Returns:
            Resource address -> Present(attributes) | Absent, in create order

        Raises:
            ValidationError: On evaluation errors or an undeterminable count
        """
        for node in self.graph.create_order():
            result = self._compute(node)
            self.results[node.address] = result
            if node.is_resource:
                self._expose(node.address, result)
        logger.debug(f"Resolved {len(self.results)} nodes")
        return {a: self.results[a] for a in self.graph.resource_order()}

    def rematerialize(self, address: str) -> NodeResult:
        """Recompute one resource from the current exposures.

        Module input/output nodes in between are recomputed recursively;
        upstream resources contribute whatever was last committed for them.
        The resource's own exposure is left alone until commit().
        """
        node = self.graph.get_node(address)
        for dep in sorted(node.dependencies, key=lambda a: self.graph.get_node(a).position):
            dep_node = self.graph.get_node(dep)
            if not dep_node.is_resource:
                self.rematerialize(dep)
        result = self._compute(node)
        self.results[address] = result
        return result

    def commit(self, address: str, config: dict, attributes: dict) -> None:
        """Expose freshly applied attributes to downstream references."""
        self.results[address] = Present(config)
        self._exposed[address] = {**config, **attributes}
        self._settled.add(address)

    def use_prior(self, address: str, record: Optional[StateRecord]) -> None:
        """Expose the last known state for a resource that was not applied."""
        if record is None or address not in self.results:
            return
        self._exposed[address] = {**record.config, **record.attributes}
        self._settled.add(address)

    def refresh(self) -> None:
        """Recompute module inputs and outputs from the current exposures."""
        for node in self.graph.create_order():
            if node.is_resource:
                continue
            try:
                self.results[node.address] = self._compute(node)
            except EngineError as e:
                logger.warning(f"Cannot recompute {node.address}: {e}")
                self.results[node.address] = Present(UNKNOWN)

    def evaluate(self, expr: Expr, where: str) -> Any:
        """Evaluate a bound expression, prefixing errors with ``where``."""
        try:
            return evaluate(expr, self._lookup)
        except ValidationError as e:
            if e.message.startswith(where):
                raise
            raise ValidationError(f"{where}: {e.message}", code=e.code) from e

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _compute(self, node: GraphNode) -> NodeResult:
        if not self._included(node):
            return Absent()
        if node.is_resource:
            attributes = {}
            for name, expr in node.attributes.items():
                value = self.evaluate(expr, f"{node.address}.{name}")
                if value is not ABSENT:
                    attributes[name] = value
            return Present(attributes)
        if node.node_type == INPUT:
            return Present(self._input_value(node))
        return Present(self.evaluate(node.value, node.address))

    def _included(self, node: GraphNode) -> bool:
        for cond in node.conditions:
            value = self.evaluate(cond, f"{node.address} count")
            if value is UNKNOWN:
                raise ValidationError(
                    f"{node.address}: count depends on values known only after apply", code='E104'
                )
            if value is ABSENT:
                value = 0
            if isinstance(value, bool):
                value = int(value)
            if not isinstance(value, (int, float)) or value not in (0, 1):
                raise ValidationError(f"{node.address}: count must be 0 or 1, got {value!r}", code='E104')
            if value == 0:
                return False
        return True

    def _input_value(self, node: GraphNode) -> Any:
        decl = node.declaration
        value = ABSENT if node.value is None else self.evaluate(node.value, node.address)
        if value is ABSENT and decl.has_default:
            value = decl.default
        if value is ABSENT or contains_unknown(value):
            return value
        return check_value(decl, value, where=f"Module input '{node.address}'")

    def _expose(self, address: str, result: NodeResult) -> None:
        if not result.is_present:
            self._exposed.pop(address, None)
            self._settled.discard(address)
            return
        record = self.state.get(address) if self.state is not None else None
        if record is not None and record.config == result.value:
            self._exposed[address] = {**result.value, **record.attributes}
            self._settled.add(address)
        else:
            self._exposed[address] = dict(result.value)
            self._settled.discard(address)

    def _lookup(self, ref: BoundRef) -> Any:
        if ref.scope == 'variable':
            return traverse(self.variables[ref.target], ref.path, ref.text)

        result = self.results.get(ref.target)
        if result is None:
            raise ValidationError(f"'{ref.text}' used before {ref.target} was resolved")
        if not result.is_present:
            return ABSENT
        if not self.graph.get_node(ref.target).is_resource:
            return traverse(result.value, ref.path, ref.text)

        exposed = self._exposed.get(ref.target, {})
        settled = ref.target in self._settled
        if not ref.path:
            return dict(exposed) if settled else UNKNOWN
        head = ref.path[0]
        if head in exposed:
            return traverse(exposed[head], ref.path[1:], ref.text)
        if settled:
            raise ValidationError(f"'{ref.text}': {ref.target} has no attribute '{head}'")
        return UNKNOWN
