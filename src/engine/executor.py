"""Plan executor.

Applies plan actions against the provider in dependency order, running
independent actions concurrently on a bounded thread pool.

- create/update/noop actions wait for the actions of their resource
  dependencies; destroy actions wait for every action on an address
  whose state record depends on them
- each successful action writes its single state record (compare-and-set)
  before any dependent is dispatched
- a failed action blocks its transitive dependents; independent
  subgraphs keep going
- cancellation stops dispatch; in-flight actions run to completion and
  the rest are skipped
"""

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Optional

from common import ActionResult, format_duration
from engine.errors import ConflictError, EngineError, ValidationError
from engine.expressions import contains_unknown
from engine.planner import CREATE, DESTROY, NOOP, UPDATE, Plan, PlanAction
from engine.provider import Provider, request_token
from engine.resolver import ExpressionResolver
from engine.state import StateRecord, StateStore

logger = logging.getLogger(__name__)

PENDING = 'pending'
RUNNING = 'running'
SUCCEEDED = 'succeeded'
FAILED = 'failed'
BLOCKED = 'blocked'
SKIPPED = 'skipped'

DEFAULT_PARALLELISM = 4


@dataclass
class ActionReport:
    """Per-address outcome of one run.

    Attributes:
        address: Resource address
        action: Planned action (create, update, destroy, noop)
        status: pending, running, succeeded, failed, blocked or skipped
        error: Error message if failed or blocked
        code: Error code if failed
        started_at: Timestamp the action was dispatched
        completed_at: Timestamp the action reached a terminal status
    """
    address: str
    action: str
    status: str = PENDING
    error: Optional[str] = None
    code: str = ''
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    def start(self) -> None:
        self.status = RUNNING
        self.started_at = time.time()

    def succeed(self) -> None:
        self.status = SUCCEEDED
        self.completed_at = time.time()

    def fail(self, error: str, code: str = '') -> None:
        self.status = FAILED
        self.completed_at = time.time()
        self.error = error
        self.code = code

    def block(self, failed_dependency: str) -> None:
        self.status = BLOCKED
        self.error = f"dependency {failed_dependency} did not succeed"

    def skip(self) -> None:
        self.status = SKIPPED

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d = {
            'address': self.address,
            'action': self.action,
            'status': self.status,
        }
        if self.duration is not None:
            d['duration'] = round(self.duration, 3)
        if self.error is not None:
            d['error'] = self.error
        if self.code:
            d['code'] = self.code
        return d


@dataclass
class ExecutionResult:
    """Run report returned by PlanExecutor.run()."""
    run_id: str
    reports: dict[str, ActionReport] = field(default_factory=dict)
    conflict: Optional[ConflictError] = None
    cancelled: bool = False
    started_at: Optional[float] = None
    completed_at: Optional[float] = None

    @property
    def success(self) -> bool:
        return all(r.status == SUCCEEDED for r in self.reports.values())

    @property
    def statuses(self) -> dict[str, str]:
        return {a: r.status for a, r in self.reports.items()}

    def counts(self) -> dict[str, int]:
        counts = {SUCCEEDED: 0, FAILED: 0, BLOCKED: 0, SKIPPED: 0}
        for report in self.reports.values():
            counts[report.status] = counts.get(report.status, 0) + 1
        return counts

    def with_status(self, status: str) -> list[str]:
        return [a for a, r in self.reports.items() if r.status == status]

    @property
    def duration(self) -> float:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return 0.0

    def summary_line(self) -> str:
        c = self.counts()
        return (f"Apply finished in {format_duration(self.duration)}: {c[SUCCEEDED]} succeeded, "
                f"{c[FAILED]} failed, {c[BLOCKED]} blocked, {c[SKIPPED]} skipped.")


class PlanExecutor:
    """Executes a plan against a provider and records state per address."""

    def __init__(
        self,
        plan: Plan,
        store: StateStore,
        provider: Provider,
        resolver: Optional[ExpressionResolver] = None,
        parallelism: int = DEFAULT_PARALLELISM,
        cancel_event: Optional[threading.Event] = None,
        run_id: Optional[str] = None,
        wait_interval: float = 0.5,
    ):
        """Initialize the executor.

        Args:
            plan: Plan to execute
            store: State store (the only place results are written)
            provider: Remote API
            resolver: Resolver used to re-materialize create/update actions
                from committed upstream attributes; None applies plan values
            parallelism: Worker pool size
            cancel_event: Set to stop dispatching new actions
            run_id: Identifier mixed into request tokens
            wait_interval: Seconds between cancellation checks while waiting
        """
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        self.plan = plan
        self.store = store
        self.provider = provider
        self.resolver = resolver
        self.parallelism = parallelism
        self.cancel_event = cancel_event or threading.Event()
        self.run_id = run_id or uuid.uuid4().hex
        self.wait_interval = wait_interval

        self._actions = {a.address: a for a in plan.actions}
        self._deps = {a.address: {d for d in a.dependencies if d in self._actions} for a in plan.actions}
        self._dependents: dict[str, set[str]] = {a: set() for a in self._actions}
        for address, deps in self._deps.items():
            for dep in deps:
                self._dependents[dep].add(address)

    def run(self) -> ExecutionResult:
        """Execute every action; never raises for per-action failures."""
        result = ExecutionResult(run_id=self.run_id, started_at=time.time())
        result.reports = {a.address: ActionReport(a.address, a.action) for a in self.plan.actions}
        pending = [a.address for a in self.plan.actions]
        in_flight: dict[Future, tuple[PlanAction, dict]] = {}
        halted = False

        logger.info(f"Applying {len(pending)} action(s) with parallelism {self.parallelism} (run {self.run_id})")

        with ThreadPoolExecutor(max_workers=self.parallelism, thread_name_prefix='apply') as pool:
            while pending or in_flight:
                if not halted and self.cancel_event.is_set():
                    logger.warning("Cancellation requested: waiting for in-flight actions, dispatching nothing new")
                    result.cancelled = True
                    halted = True

                if not halted:
                    pending = self._dispatch(pool, pending, in_flight, result)

                if not in_flight:
                    if pending and not halted:
                        # Nothing running and nothing dispatchable
                        logger.error(f"Unschedulable actions: {', '.join(pending)}")
                    break

                done, _ = wait(list(in_flight), timeout=self.wait_interval, return_when=FIRST_COMPLETED)
                for future in done:
                    action, desired = in_flight.pop(future)
                    if not self._finish(action, desired, future, result):
                        halted = True

        for address in pending:
            if result.reports[address].status == PENDING:
                result.reports[address].skip()

        result.completed_at = time.time()
        logger.info(result.summary_line())
        return result

    def _dispatch(self, pool: ThreadPoolExecutor, pending: list[str],
                  in_flight: dict, result: ExecutionResult) -> list[str]:
        """Submit every pending action whose dependencies succeeded."""
        progressed = True
        while progressed:
            progressed = False
            for address in list(pending):
                report = result.reports[address]
                if report.status != PENDING:
                    pending.remove(address)
                    continue
                if not all(result.reports[d].status == SUCCEEDED for d in self._deps[address]):
                    continue
                pending.remove(address)
                action = self._actions[address]
                report.start()

                if action.action == NOOP:
                    report.succeed()
                    progressed = True
                    continue

                try:
                    desired = self._materialize(action)
                except EngineError as e:
                    logger.error(f"[{action.action}] {address}: {e}")
                    report.fail(e.message, e.code)
                    self._block_dependents(address, result)
                    progressed = True
                    continue

                logger.info(f"[{action.action}] {address}")
                future = pool.submit(self._apply, action, desired)
                in_flight[future] = (action, desired)
        return pending

    def _materialize(self, action: PlanAction) -> dict:
        """Desired attributes for a create/update, recomputed from committed upstream values."""
        if action.action == DESTROY:
            return {}
        desired = action.desired or {}
        if self.resolver is not None:
            node = self.resolver.rematerialize(action.address)
            if not node.is_present:
                raise ValidationError(f"{action.address} is no longer present in the stack; re-plan", code='E106')
            desired = node.value
        if contains_unknown(desired):
            unknown = sorted(k for k, v in desired.items() if contains_unknown(v))
            raise ValidationError(
                f"{action.address}: values still unknown after dependencies applied: {', '.join(unknown)}",
                code='E107',
            )
        return desired

    def _apply(self, action: PlanAction, desired: dict) -> tuple[ActionResult, Optional[StateRecord]]:
        """Worker: run the provider verb, then commit this address's state.

        Raises:
            ConflictError: If the state record changed since planning
        """
        start = time.time()
        address = action.address
        token = request_token(self.run_id, address, action.action)
        record = self.store.get(address)
        current_version = record.version if record else None
        if current_version != action.version:
            raise ConflictError(
                f"State for '{address}' changed since planning "
                f"(planned at version {action.version}, found {current_version}); re-plan",
                code='E301',
            )

        try:
            if action.action == CREATE:
                attributes = self.provider.create(action.kind, desired, token)
            elif action.action == UPDATE:
                if desired == record.config:
                    logger.info(f"[update] {address}: unchanged after dependencies applied")
                    return ActionResult(success=True, duration=time.time() - start,
                                        attributes=record.attributes), None
                attributes = self.provider.update(record.resource_id, desired, token)
            else:
                if record.resource_id:
                    self.provider.delete(record.resource_id, token)
                self.store.remove(address, action.version)
                return ActionResult(success=True, duration=time.time() - start), None
        except ConflictError:
            raise
        except EngineError as e:
            return ActionResult(success=False, message=e.message, code=e.code,
                                duration=time.time() - start), None

        committed = self.store.put(
            address,
            kind=action.kind,
            config=desired,
            attributes=attributes,
            dependencies=action.dependencies,
            position=action.position,
            expected_version=action.version,
        )
        return ActionResult(success=True, duration=time.time() - start, attributes=attributes), committed

    def _finish(self, action: PlanAction, desired: dict, future: Future, result: ExecutionResult) -> bool:
        """Record a completed action. Returns False if dispatch must stop."""
        report = result.reports[action.address]
        try:
            outcome, committed = future.result()
        except ConflictError as e:
            logger.error(f"[{action.action}] {action.address}: {e}")
            report.fail(e.message, e.code)
            result.conflict = e
            self._block_dependents(action.address, result)
            return False
        except Exception as e:
            logger.exception(f"[{action.action}] {action.address}: unexpected error")
            report.fail(f"unexpected error: {e}")
            self._block_dependents(action.address, result)
            return True

        if not outcome.success:
            logger.error(f"[{action.action}] {action.address} failed: {outcome.message}")
            report.fail(outcome.message, outcome.code)
            self._block_dependents(action.address, result)
            return True

        report.succeed()
        logger.info(f"[{action.action}] {action.address} done in {format_duration(outcome.duration)}")
        if self.resolver is not None and action.action in (CREATE, UPDATE):
            config = committed.config if committed else desired
            self.resolver.commit(action.address, config, outcome.attributes)
        return True

    def _block_dependents(self, address: str, result: ExecutionResult) -> None:
        """Mark every transitive dependent of a failed action as blocked."""
        stack = [address]
        while stack:
            current = stack.pop()
            for dependent in sorted(self._dependents[current]):
                report = result.reports[dependent]
                if report.status == PENDING:
                    report.block(address)
                    logger.warning(f"[{report.action}] {dependent} blocked by {address}")
                    stack.append(dependent)
