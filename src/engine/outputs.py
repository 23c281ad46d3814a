"""Output aggregation after apply.

Root outputs are evaluated once the executor returns. Addresses whose
action succeeded (or was a noop) contribute their committed attributes;
failed, blocked and skipped addresses contribute the last attributes
recorded in prior state, and any output that reads them is flagged stale.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from engine.errors import EngineError
from engine.executor import BLOCKED, FAILED, SKIPPED, ExecutionResult
from engine.expressions import ABSENT, Expr, contains_unknown, references
from engine.graph import ResourceGraph
from engine.resolver import ExpressionResolver
from engine.state import StateSnapshot, StateStore

logger = logging.getLogger(__name__)

STALE_STATUSES = {FAILED, BLOCKED, SKIPPED}


@dataclass
class OutputValue:
    """A computed root output.

    Attributes:
        name: Output name
        value: Computed value (None when absent or unknown)
        known: False if the value depends on something not yet applied
        stale: True if it read attributes of an address that was not applied
        sensitive: Hide the value in human-readable output
        description: Output description from the stack
        error: Evaluation error, if any
    """
    name: str
    value: Any = None
    known: bool = True
    stale: bool = False
    sensitive: bool = False
    description: str = ''
    error: Optional[str] = None

    def display(self) -> str:
        if self.error:
            return f"<error: {self.error}>"
        if not self.known:
            return '(known after apply)'
        if self.sensitive:
            return '(sensitive)'
        text = json.dumps(self.value) if isinstance(self.value, (dict, list)) else str(self.value)
        return f"{text} (stale)" if self.stale else text

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'value': self.value,
            'known': self.known,
            'stale': self.stale,
            'sensitive': self.sensitive,
        }
        if self.description:
            d['description'] = self.description
        if self.error:
            d['error'] = self.error
        return d

    @classmethod
    def from_dict(cls, name: str, data: dict) -> 'OutputValue':
        return cls(
            name=name,
            value=data.get('value'),
            known=data.get('known', True),
            stale=data.get('stale', False),
            sensitive=data.get('sensitive', False),
            description=data.get('description', ''),
            error=data.get('error'),
        )


class OutputAggregator:
    """Computes root outputs from the freshest attributes available."""

    def __init__(self, graph: ResourceGraph, resolver: ExpressionResolver):
        self.graph = graph
        self.resolver = resolver

    def aggregate(self, result: Optional[ExecutionResult] = None,
                  prior: Optional[StateSnapshot] = None) -> dict[str, OutputValue]:
        """Evaluate every root output.

        Args:
            result: Executor run report; None evaluates against resolver state as is
            prior: State snapshot taken before the run
        """
        stale_addresses: set[str] = set()
        if result is not None:
            stale_addresses = {a for a, s in result.statuses.items() if s in STALE_STATUSES}
            for address in sorted(stale_addresses):
                record = prior.get(address) if prior is not None else None
                self.resolver.use_prior(address, record)
        self.resolver.refresh()

        outputs: dict[str, OutputValue] = {}
        for name, (spec, expr) in self.graph.outputs.items():
            out = OutputValue(name=name, sensitive=spec.sensitive, description=spec.description)
            out.stale = bool(self._touched(expr) & stale_addresses)
            try:
                value = self.resolver.evaluate(expr, f"output.{name}")
            except EngineError as e:
                logger.warning(f"Output '{name}' could not be computed: {e}")
                out.error = e.message
                outputs[name] = out
                continue
            if value is ABSENT:
                value = None
            if contains_unknown(value):
                out.known = False
                value = None
            out.value = value
            outputs[name] = out
        return outputs

    def _touched(self, expr: Expr) -> set[str]:
        """Resource addresses an output expression reads, directly or through modules."""
        touched: set[str] = set()
        for ref in references(expr):
            if ref.scope != 'node':
                continue
            if self.graph.get_node(ref.target).is_resource:
                touched.add(ref.target)
            else:
                touched |= self.graph.resource_dependencies(ref.target)
        return touched

    @staticmethod
    def persist(outputs: dict[str, OutputValue], store: StateStore) -> None:
        """Save outputs into the state file for the output command."""
        store.save_outputs({name: out.to_dict() for name, out in outputs.items()})
        logger.debug(f"Persisted {len(outputs)} output(s)")


def load_outputs(snapshot: StateSnapshot) -> dict[str, OutputValue]:
    """Outputs persisted by the last apply."""
    return {name: OutputValue.from_dict(name, data) for name, data in snapshot.outputs.items()}
