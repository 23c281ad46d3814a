"""Orchestration driver: sequences lifecycle phases.

Phases: uninitialized -> initialized -> validated -> planned -> applied | destroyed

Every phase method returns a PhaseResult instead of raising. run()
executes the phases a command needs, halts at the first failure and
records the furthest phase reached.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from config import ConfigError, RunConfig
from engine.errors import ConflictError, EngineError, GraphError, PreconditionError, ValidationError
from engine.executor import ExecutionResult, PlanExecutor
from engine.graph import ResourceGraph
from engine.outputs import OutputAggregator, OutputValue, load_outputs
from engine.planner import Plan, Planner, detect_drift, plan_fingerprint
from engine.provider import HttpProvider, Provider
from engine.resolver import ExpressionResolver
from engine.state import StateSnapshot, StateStore
from engine.variables import VariableRegistry, collect_overrides
from preflight import format_preflight_errors, validate_readiness
from reporting.report import RunReport
from stack import Stack, load_stack

logger = logging.getLogger(__name__)

UNINITIALIZED = 'uninitialized'
INITIALIZED = 'initialized'
VALIDATED = 'validated'
PLANNED = 'planned'
APPLIED = 'applied'
DESTROYED = 'destroyed'

EXIT_OK = 0
EXIT_VALIDATION = 1
EXIT_PARTIAL = 2
EXIT_PRECONDITION = 3


def exit_code_for(error: Optional[BaseException]) -> int:
    """Map an error to the CLI exit code."""
    if error is None:
        return EXIT_OK
    if isinstance(error, (PreconditionError, ConfigError)):
        return EXIT_PRECONDITION
    if isinstance(error, (ValidationError, GraphError, ConflictError)):
        return EXIT_VALIDATION
    return EXIT_PARTIAL


@dataclass
class PhaseResult:
    """Outcome of one phase.

    Attributes:
        phase: Phase this result belongs to
        success: True if the phase completed
        error: Structured error when it did not
        payload: Phase output (plan, execution result, outputs, ...)
        exit_code: CLI exit code for this outcome
    """
    phase: str
    success: bool
    error: Optional[BaseException] = None
    payload: Any = None
    exit_code: int = EXIT_OK

    @property
    def message(self) -> str:
        return str(self.error) if self.error else ''


def _confirm(prompt: str) -> bool:
    response = input(f"{prompt} [y/N] ").strip().lower()
    return response == 'y'


class Driver:
    """Runs lifecycle phases against one workdir."""

    def __init__(
        self,
        config: RunConfig,
        cli_vars: Optional[Mapping[str, str]] = None,
        provider: Optional[Provider] = None,
        environ: Optional[Mapping[str, str]] = None,
        cancel_event: Optional[threading.Event] = None,
        confirm: Callable[[str], bool] = _confirm,
        echo: Callable[[str], None] = print,
    ):
        """Initialize the driver.

        Args:
            config: Run configuration
            cli_vars: Variable overrides from --var flags
            provider: Provider to use; default builds an HttpProvider from config
            environ: Environment for IAC_VAR_* overrides (default os.environ)
            cancel_event: Set to stop dispatching apply/destroy actions
            confirm: Prompt returning True to proceed with changes
            echo: Writes human-readable plan and prompt text
        """
        self.config = config
        self.cli_vars = dict(cli_vars or {})
        self.environ = environ
        self.cancel_event = cancel_event or threading.Event()
        self.confirm = confirm
        self.echo = echo
        self.store = StateStore(config.state_path)
        self._provider = provider

        self.phase = UNINITIALIZED
        self.furthest = UNINITIALIZED
        self.stack: Optional[Stack] = None
        self.variables: Optional[Mapping[str, Any]] = None
        self.graph: Optional[ResourceGraph] = None
        self.fingerprint = ''
        self.current_plan: Optional[Plan] = None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @property
    def provider(self) -> Provider:
        if self._provider is None:
            self._provider = HttpProvider(
                endpoint=self.config.api_endpoint,
                token=self.config.get_api_token(),
                insecure=self.config.insecure,
                request_timeout=self.config.request_timeout,
                poll_interval=self.config.poll_interval,
                poll_timeout=self.config.poll_timeout,
                read_retries=self.config.read_retries,
            )
        return self._provider

    def _ok(self, phase: str, payload: Any = None) -> PhaseResult:
        self.phase = phase
        self.furthest = phase
        return PhaseResult(phase=phase, success=True, payload=payload)

    def _fail(self, phase: str, error: BaseException, payload: Any = None,
              exit_code: Optional[int] = None) -> PhaseResult:
        logger.error(f"Phase {phase} failed: {error}")
        return PhaseResult(
            phase=phase,
            success=False,
            error=error,
            payload=payload,
            exit_code=exit_code_for(error) if exit_code is None else exit_code,
        )

    def _load(self) -> Stack:
        if self.stack is None:
            self.stack = load_stack(self.config.stack_file)
        return self.stack

    def _preflight(self, phase: str) -> Optional[PhaseResult]:
        """Check credentials and state; None when everything is ready."""
        errors = validate_readiness(self.config, requires_api=self._provider is None)
        if errors:
            self.echo(format_preflight_errors(errors))
            return self._fail(phase, PreconditionError(f"{len(errors)} pre-flight check(s) failed", code='E604'))
        return None

    def _snapshot(self) -> StateSnapshot:
        self.store.check()
        return self.store.snapshot()

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def initialize(self) -> PhaseResult:
        """Create the state location and parse the stack and its declarations."""
        try:
            self.store.initialize()
            stack = self._load()
        except EngineError as e:
            return self._fail(INITIALIZED, e)
        logger.info(f"Initialized workdir {self.config.workdir} (stack '{stack.name}')")
        return self._ok(INITIALIZED, {'stack': stack.name, 'state_path': str(self.config.state_path)})

    def validate(self) -> PhaseResult:
        """Resolve variables, build the graph and evaluate it without state."""
        try:
            stack = self._load()
            overrides = collect_overrides(
                stack.body.variables,
                var_file=self.config.var_file,
                environ=self.environ,
                cli_vars=self.cli_vars,
            )
            self.variables = VariableRegistry(stack.body.variables).resolve(overrides)
            self.graph = ResourceGraph(stack, self.variables)
            resolved = ExpressionResolver(self.graph, self.variables).resolve()
        except EngineError as e:
            return self._fail(VALIDATED, e)

        self.fingerprint = plan_fingerprint(stack.fingerprint, self.variables)
        present = sum(1 for r in resolved.values() if r.is_present)
        logger.info(f"Stack '{stack.name}' is valid: {present} of {len(resolved)} resource(s) present")
        return self._ok(VALIDATED, {'resources': len(resolved), 'present': present})

    def plan(self, refresh: bool = False, out: Optional[Any] = None) -> PhaseResult:
        """Diff the stack against state; optionally check drift and save the plan."""
        if self.graph is None:
            result = self.validate()
            if not result.success:
                return result
        if refresh:
            failed = self._preflight(PLANNED)
            if failed is not None:
                return failed
        drift = []
        try:
            snapshot = self._snapshot()
            if refresh:
                drift = detect_drift(snapshot, self.provider)
            resolver = ExpressionResolver(self.graph, self.variables, snapshot)
            plan = Planner(snapshot, self.fingerprint).plan(self.graph, resolver.resolve())
            if out is not None:
                plan.save(out)
                logger.info(f"Plan saved to {out}")
        except EngineError as e:
            return self._fail(PLANNED, e)

        self.current_plan = plan
        return self._ok(PLANNED, {'plan': plan, 'drift': drift})

    def apply(self, plan_file: Optional[Any] = None, auto_approve: bool = False) -> PhaseResult:
        """Execute a saved or fresh plan and compute outputs."""
        failed = self._preflight(APPLIED)
        if failed is not None:
            return failed
        if self.graph is None:
            result = self.validate()
            if not result.success:
                return result

        try:
            if plan_file is not None:
                plan = Plan.load(plan_file)
                if plan.destroy:
                    raise ValidationError(f"{plan_file} is a destroy plan; run destroy instead")
                plan.check_current(self.fingerprint, self._snapshot().serial)
            else:
                if self.current_plan is None:
                    result = self.plan()
                    if not result.success:
                        return result
                plan = self.current_plan
                plan.check_current(self.fingerprint, self._snapshot().serial)
        except EngineError as e:
            return self._fail(APPLIED, e)

        self.echo(plan.format())
        if plan.has_changes and not auto_approve and not self.confirm("Apply these changes?"):
            self.echo("Aborted.")
            return self._fail(APPLIED, ValidationError("Apply not confirmed", code='E109'),
                              exit_code=EXIT_VALIDATION)
        return self._execute(plan, APPLIED)

    def destroy(self, auto_approve: bool = False) -> PhaseResult:
        """Destroy every resource recorded in state."""
        failed = self._preflight(DESTROYED)
        if failed is not None:
            return failed
        try:
            stack_name = self._load().name
            snapshot = self._snapshot()
            plan = Planner(snapshot).destroy_plan()
        except EngineError as e:
            return self._fail(DESTROYED, e)

        self.echo(plan.format())
        if not plan.has_changes:
            return self._ok(DESTROYED, {'plan': plan, 'result': None})
        if not auto_approve:
            self.echo(f"\nWARNING: This will destroy all {len(plan.actions)} resource(s) of stack '{stack_name}'.")
            self.echo("This action cannot be undone.")
            if not self.confirm("Continue?"):
                self.echo("Aborted.")
                return self._fail(DESTROYED, ValidationError("Destroy not confirmed", code='E109'),
                                  exit_code=EXIT_VALIDATION)
        return self._execute(plan, DESTROYED)

    def output(self, name: Optional[str] = None) -> PhaseResult:
        """Read outputs persisted by the last apply."""
        try:
            outputs = load_outputs(self._snapshot())
            if name is not None:
                if name not in outputs:
                    raise ValidationError(f"No output named '{name}'", code='E108')
                outputs = {name: outputs[name]}
        except EngineError as e:
            return self._fail('output', e)
        return PhaseResult(phase='output', success=True, payload=outputs)

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _execute(self, plan: Plan, phase: str) -> PhaseResult:
        stack_name = self._load().name
        report = RunReport(stack=stack_name, command='destroy' if plan.destroy else 'apply',
                           report_dir=self.config.report_dir)
        report.start()

        try:
            prior = self._snapshot()
            resolver = None
            if not plan.destroy:
                resolver = ExpressionResolver(self.graph, self.variables, prior)
                resolver.resolve()
        except EngineError as e:
            report.error = str(e)
            report.finish(False)
            return self._fail(phase, e)

        start = time.time()
        result = PlanExecutor(
            plan,
            self.store,
            self.provider,
            resolver=resolver,
            parallelism=self.config.parallelism,
            cancel_event=self.cancel_event,
        ).run()
        logger.debug(f"Executor returned after {time.time() - start:.1f}s")
        report.record(result)

        if plan.destroy:
            if result.success:
                self.store.save_outputs({})
            outputs: dict[str, OutputValue] = {}
        else:
            outputs = OutputAggregator(self.graph, resolver).aggregate(result, prior)
            OutputAggregator.persist(outputs, self.store)
        report.outputs = {name: out.display() for name, out in outputs.items()}

        paths = report.finish(result.success)
        logger.info(f"Report written to {paths[0]}")
        payload = {'plan': plan, 'result': result, 'outputs': outputs}
        if result.success:
            return self._ok(phase, payload)
        return self._fail(phase, self._run_error(result), payload, exit_code=EXIT_PARTIAL)

    @staticmethod
    def _run_error(result: ExecutionResult) -> EngineError:
        if result.conflict is not None:
            return result.conflict
        counts = result.counts()
        return EngineError('E400', f"Partial apply: {counts['failed']} failed, {counts['blocked']} blocked, "
                                   f"{counts['skipped']} skipped")

    # -------------------------------------------------------------------------
    # Pipelines
    # -------------------------------------------------------------------------

    def run(self, command: str, **kwargs: Any) -> PhaseResult:
        """Run the phases a command needs, stopping at the first failure."""
        pipelines: dict[str, list[Callable[[], PhaseResult]]] = {
            'init': [self.initialize],
            'validate': [self.validate],
            'plan': [self.validate, lambda: self.plan(kwargs.get('refresh', False), kwargs.get('out'))],
            'apply': [self.validate, lambda: self.apply(kwargs.get('plan_file'), kwargs.get('auto_approve', False))],
            'destroy': [lambda: self.destroy(kwargs.get('auto_approve', False))],
            'output': [lambda: self.output(kwargs.get('name'))],
        }
        if command not in pipelines:
            raise ValueError(f"Unknown command: {command}")

        result = PhaseResult(phase=self.phase, success=True)
        for step in pipelines[command]:
            result = step()
            if not result.success:
                logger.error(f"Halted: furthest phase reached was '{self.furthest}'")
                break
        return result
