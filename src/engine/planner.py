"""Planner: diff materialized resources against prior state.

For each resource present in the graph or in prior state:
- in graph, not in state: create
- in graph, in state, desired != last-applied config: update
- in graph, in state, equal: noop
- not in graph (absent or removed), in state: destroy

Create/update/noop actions follow the graph's create order. Destroy
actions come last, dependents before dependencies, following the
dependency edges recorded in state.
"""

import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from engine.errors import ConflictError, DriftError, NotFoundError, ValidationError
from engine.expressions import UNKNOWN, contains_unknown
from engine.graph import ResourceGraph, topological_sort
from engine.resolver import NodeResult
from engine.state import StateSnapshot

logger = logging.getLogger(__name__)

CREATE = 'create'
UPDATE = 'update'
DESTROY = 'destroy'
NOOP = 'noop'

ACTION_SYMBOLS = {CREATE: '+', UPDATE: '~', DESTROY: '-', NOOP: ' '}

PLAN_FORMAT_VERSION = 1

_UNKNOWN_MARKER = '__unknown__'


def _encode(value: Any) -> Any:
    if value is UNKNOWN:
        return {_UNKNOWN_MARKER: True}
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def _decode(value: Any) -> Any:
    if isinstance(value, dict):
        if value == {_UNKNOWN_MARKER: True}:
            return UNKNOWN
        return {k: _decode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_decode(v) for v in value]
    return value


def plan_fingerprint(stack_fingerprint: str, variables: Mapping[str, Any]) -> str:
    """Fingerprint of a stack plus the variable values it was resolved with."""
    canonical = json.dumps({'stack': stack_fingerprint, 'variables': dict(variables)},
                           sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


@dataclass
class PlanAction:
    """One planned action.

    Attributes:
        address: Resource address
        action: CREATE, UPDATE, DESTROY or NOOP
        kind: Resource kind
        desired: Materialized attributes (None for destroy)
        prior: Last-applied config from state (None for create)
        dependencies: Addresses whose actions must succeed first
        position: Create-order index, recorded into state on success
        version: State version token seen when planning (None for create)
    """
    address: str
    action: str
    kind: str
    desired: Optional[dict] = None
    prior: Optional[dict] = None
    dependencies: list[str] = field(default_factory=list)
    position: int = 0
    version: Optional[str] = None

    @property
    def changed_attributes(self) -> list[str]:
        """Top-level attribute names that differ between prior and desired."""
        desired = self.desired or {}
        prior = self.prior or {}
        return sorted(k for k in set(desired) | set(prior)
                      if k not in desired or k not in prior
                      or contains_unknown(desired[k]) or desired[k] != prior[k])

    def describe(self) -> str:
        line = f"  {ACTION_SYMBOLS[self.action]} {self.address}"
        if self.action == UPDATE:
            line += f" ({', '.join(self.changed_attributes)})"
        return line

    def to_dict(self) -> dict:
        return {
            'address': self.address,
            'action': self.action,
            'kind': self.kind,
            'desired': _encode(self.desired),
            'prior': self.prior,
            'dependencies': list(self.dependencies),
            'position': self.position,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'PlanAction':
        return cls(
            address=data['address'],
            action=data['action'],
            kind=data.get('kind', ''),
            desired=_decode(data.get('desired')),
            prior=data.get('prior'),
            dependencies=list(data.get('dependencies', [])),
            position=data.get('position', 0),
            version=data.get('version'),
        )


@dataclass
class Plan:
    """Ordered set of actions reconciling the stack with recorded state.

    Attributes:
        actions: Actions in execution order
        fingerprint: plan_fingerprint() of the stack and variables
        state_serial: State serial the plan was computed against
        destroy: True for a destroy-only plan
        created_at: Timestamp the plan was computed
    """
    actions: list[PlanAction] = field(default_factory=list)
    fingerprint: str = ''
    state_serial: int = 0
    destroy: bool = False
    created_at: float = field(default_factory=time.time)

    def get(self, address: str) -> Optional[PlanAction]:
        return next((a for a in self.actions if a.address == address), None)

    @property
    def summary(self) -> dict[str, int]:
        counts = {CREATE: 0, UPDATE: 0, DESTROY: 0, NOOP: 0}
        for action in self.actions:
            counts[action.action] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(a.action != NOOP for a in self.actions)

    def summary_line(self) -> str:
        s = self.summary
        return f"Plan: {s[CREATE]} to add, {s[UPDATE]} to change, {s[DESTROY]} to destroy."

    def format(self) -> str:
        """Human-readable plan listing, without noop actions."""
        lines = [a.describe() for a in self.actions if a.action != NOOP]
        if not lines:
            lines = ['  No changes. Infrastructure matches the stack.']
        return '\n'.join(lines + ['', self.summary_line()])

    def check_current(self, fingerprint: str, state_serial: int) -> None:
        """Reject a plan computed against another stack or state.

        Raises:
            ConflictError: If the stack, variables or state changed since planning
        """
        if not self.destroy and self.fingerprint != fingerprint:
            raise ConflictError("Plan is stale: stack or variables changed since it was created; re-plan",
                                code='E303')
        if self.state_serial != state_serial:
            raise ConflictError(
                f"Plan is stale: state serial is {state_serial}, plan was made at {self.state_serial}; re-plan",
                code='E303',
            )

    def to_dict(self) -> dict:
        return {
            'format': PLAN_FORMAT_VERSION,
            'fingerprint': self.fingerprint,
            'state_serial': self.state_serial,
            'destroy': self.destroy,
            'created_at': self.created_at,
            'actions': [a.to_dict() for a in self.actions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Plan':
        if data.get('format') != PLAN_FORMAT_VERSION:
            raise ValidationError(f"Unsupported plan format: {data.get('format')!r}")
        return cls(
            actions=[PlanAction.from_dict(a) for a in data.get('actions', [])],
            fingerprint=data.get('fingerprint', ''),
            state_serial=data.get('state_serial', 0),
            destroy=data.get('destroy', False),
            created_at=data.get('created_at', 0.0),
        )

    def save(self, path: Path) -> Path:
        """Write the plan as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w', encoding='utf-8') as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.debug(f"Saved plan to {path}")
        return path

    @classmethod
    def load(cls, path: Path) -> 'Plan':
        """Read a plan written by save().

        Raises:
            ValidationError: If the file is missing or not a plan
        """
        try:
            with open(path, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise ValidationError(f"Cannot read plan file {path}: {e}") from e
        return cls.from_dict(data)


class Planner:
    """Computes plans from a resolved graph and a state snapshot."""

    def __init__(self, state: StateSnapshot, fingerprint: str = ''):
        """Initialize the planner.

        Args:
            state: Prior state snapshot
            fingerprint: plan_fingerprint() recorded into produced plans
        """
        self.state = state
        self.fingerprint = fingerprint

    def plan(self, graph: ResourceGraph, resolved: Mapping[str, NodeResult]) -> Plan:
        """Diff the materialized resources against state.

        Args:
            graph: Resource graph
            resolved: ExpressionResolver.resolve() output

        Raises:
            ValidationError: If a resource changed kind in place
        """
        actions: list[PlanAction] = []
        present = {a for a, r in resolved.items() if r.is_present}

        for address in graph.resource_order():
            if address not in present:
                continue
            node = graph.get_node(address)
            desired = resolved[address].value
            record = self.state.get(address)
            if record is None:
                action = CREATE
            elif record.kind != node.kind:
                raise ValidationError(
                    f"{address}: kind changed from '{record.kind}' to '{node.kind}'; "
                    f"rename the resource to replace it", code='E105'
                )
            elif contains_unknown(desired) or desired != record.config:
                action = UPDATE
            else:
                action = NOOP
            actions.append(PlanAction(
                address=address,
                action=action,
                kind=node.kind,
                desired=desired,
                prior=record.config if record else None,
                dependencies=sorted(d for d in graph.resource_dependencies(address) if d in present),
                position=graph.resource_position(address),
                version=record.version if record else None,
            ))

        removed = [a for a in self.state.records if a not in present]
        actions.extend(self._destroy_actions(removed, {a.address for a in actions}))

        plan = Plan(actions=actions, fingerprint=self.fingerprint, state_serial=self.state.serial)
        logger.info(plan.summary_line())
        return plan

    def destroy_plan(self) -> Plan:
        """Destroy-only plan covering every record in state."""
        actions = self._destroy_actions(list(self.state.records), set())
        plan = Plan(actions=actions, fingerprint=self.fingerprint,
                    state_serial=self.state.serial, destroy=True)
        logger.info(plan.summary_line())
        return plan

    def _destroy_actions(self, addresses: list[str], kept: set[str]) -> list[PlanAction]:
        """Order destroys dependents-first using dependencies recorded in state.

        A destroy waits for every action on an address whose record depends
        on it, so a kept resource that drops the reference updates first.
        """
        records = self.state.records
        doomed = set(addresses)
        # b depends on a -> a's destroy follows b's destroy
        follows: dict[str, set[str]] = {a: set() for a in doomed}
        waits_on: dict[str, set[str]] = {a: set() for a in doomed}
        for address, record in records.items():
            for dep in record.dependencies:
                if dep not in doomed:
                    continue
                if address in doomed:
                    follows[dep].add(address)
                if address in doomed or address in kept:
                    waits_on[dep].add(address)

        order = topological_sort(follows, {a: -records[a].position for a in doomed})
        return [
            PlanAction(
                address=address,
                action=DESTROY,
                kind=records[address].kind,
                prior=records[address].config,
                dependencies=sorted(waits_on[address]),
                position=records[address].position,
                version=records[address].version,
            )
            for address in order
        ]


def detect_drift(state: StateSnapshot, provider) -> list[DriftError]:
    """Compare recorded attributes with what the provider reports.

    Drift is reported, never corrected; the next plan decides what to do.
    """
    drift: list[DriftError] = []
    for address, record in state.records.items():
        if not record.resource_id:
            continue
        try:
            remote = provider.read(record.resource_id)
        except NotFoundError:
            drift.append(DriftError(address, f"resource {record.resource_id} no longer exists remotely"))
            continue
        changed = sorted(k for k, v in record.config.items() if k in remote and remote[k] != v)
        missing = sorted(k for k in record.config if k not in remote)
        if changed:
            drift.append(DriftError(address, f"attributes changed remotely: {', '.join(changed)}"))
        elif missing:
            logger.debug(f"{address}: provider did not report {', '.join(missing)}")
    for error in drift:
        logger.warning(f"Drift detected: {error.message}")
    return drift
