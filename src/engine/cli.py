"""CLI handlers for lifecycle commands (init, validate, plan, apply, destroy, output).

Usage:
    iac-engine init     [--workdir DIR]
    iac-engine validate [--workdir DIR] [--var name=value] [--var-file FILE]
    iac-engine plan     [--workdir DIR] [--out FILE] [--refresh] [--json-output]
    iac-engine apply    [--workdir DIR] [--plan FILE] [--auto-approve] [--parallelism N]
    iac-engine destroy  [--workdir DIR] [--auto-approve]
    iac-engine output   [NAME] [--workdir DIR] [--json-output]
"""

import argparse
import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from config import ConfigError, load_run_config
from engine.driver import EXIT_PRECONDITION, EXIT_VALIDATION, Driver, PhaseResult
from engine.errors import EngineError
from engine.variables import parse_cli_vars

logger = logging.getLogger(__name__)


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'iac-engine {verb}',
        description=description,
    )
    parser.add_argument(
        '--workdir', '-C',
        default='.',
        help='Directory containing stack.yaml and settings.yaml (default: .)',
    )
    parser.add_argument(
        '--var',
        action='append',
        metavar='NAME=VALUE',
        help='Set a variable (repeatable; overrides var file and IAC_VAR_*)',
    )
    parser.add_argument(
        '--var-file',
        help='File of name=value lines (default: stack.vars if present)',
    )
    parser.add_argument(
        '--parallelism',
        type=int,
        help='Number of concurrent provider operations (default: 4)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    return parser


def _setup_logging(verbose: bool, json_output: bool) -> None:
    """Configure logging based on flags."""
    if json_output:
        root_logger = logging.getLogger()
        for handler in root_logger.handlers[:]:
            root_logger.removeHandler(handler)
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S',
        ))
        root_logger.addHandler(stderr_handler)

    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _echo_stderr(text: str) -> None:
    print(text, file=sys.stderr)


def _build_driver(args, cancel_event: Optional[threading.Event] = None) -> tuple[Optional[Driver], int]:
    """Load configuration and build a Driver.

    Returns:
        (driver, 0) on success, (None, exit_code) on configuration errors
    """
    try:
        config = load_run_config(
            Path(args.workdir),
            overrides={
                'var_file': args.var_file,
                'parallelism': args.parallelism,
            },
        )
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None, EXIT_PRECONDITION

    try:
        cli_vars = parse_cli_vars(args.var)
    except EngineError as e:
        print(f"Error: {e}", file=sys.stderr)
        return None, EXIT_VALIDATION

    driver = Driver(
        config,
        cli_vars=cli_vars,
        cancel_event=cancel_event,
        echo=_echo_stderr if args.json_output else print,
    )
    return driver, 0


def _install_interrupt_handler(event: threading.Event):
    """First Ctrl-C stops dispatch; a second one aborts immediately."""
    def _handler(signum, frame):
        if event.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupt received: finishing in-flight actions (press Ctrl-C again to abort)")
        event.set()
    return signal.signal(signal.SIGINT, _handler)


def _error_dict(result: PhaseResult) -> Optional[dict]:
    if result.error is None:
        return None
    if isinstance(result.error, EngineError):
        return {'code': result.error.code, 'message': result.error.message}
    return {'code': '', 'message': str(result.error)}


def _emit_json(verb: str, driver: Driver, result: PhaseResult, extra: dict) -> None:
    """Emit structured JSON output."""
    output: dict[str, Any] = {
        'command': verb,
        'success': result.success,
        'phase': result.phase,
        'furthest_phase': driver.furthest,
        'exit_code': result.exit_code,
    }
    error = _error_dict(result)
    if error:
        output['error'] = error
    output.update(extra)
    print(json.dumps(output, indent=2, default=str))


def _report_failure(driver: Driver, result: PhaseResult) -> None:
    print(f"Error: {result.message}", file=sys.stderr)
    print(f"Furthest phase reached: {driver.furthest}", file=sys.stderr)


def _outputs_json(outputs: dict) -> dict:
    return {name: out.to_dict() for name, out in outputs.items()}


def _print_outputs(outputs: dict) -> None:
    if not outputs:
        return
    print("\nOutputs:")
    for name, out in outputs.items():
        print(f"  {name} = {out.display()}")


def init_main(argv: list) -> int:
    """Handle 'init': create state location and parse the stack."""
    parser = _common_parser('init', 'Initialize a workdir')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    driver, rc = _build_driver(args)
    if driver is None:
        return rc
    result = driver.run('init')

    if args.json_output:
        _emit_json('init', driver, result, {'payload': result.payload})
    elif result.success:
        print(f"Initialized stack '{result.payload['stack']}' (state: {result.payload['state_path']})")
    else:
        _report_failure(driver, result)
    return result.exit_code


def validate_main(argv: list) -> int:
    """Handle 'validate': variables, graph and expressions, no state or remote calls."""
    parser = _common_parser('validate', 'Validate stack, variables and references')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    driver, rc = _build_driver(args)
    if driver is None:
        return rc
    result = driver.run('validate')

    if args.json_output:
        _emit_json('validate', driver, result, {'payload': result.payload})
    elif result.success:
        count = result.payload['present']
        print(f"Stack '{driver.stack.name}' is valid ({count} resource{'s' if count != 1 else ''})")
    else:
        _report_failure(driver, result)
    return result.exit_code


def plan_main(argv: list) -> int:
    """Handle 'plan': diff the stack against state."""
    parser = _common_parser('plan', 'Show the actions apply would take')
    parser.add_argument(
        '--out',
        help='Save the plan to a file for apply --plan',
    )
    parser.add_argument(
        '--refresh',
        action='store_true',
        help='Read every recorded resource from the provider and report drift',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    driver, rc = _build_driver(args)
    if driver is None:
        return rc
    result = driver.run('plan', refresh=args.refresh, out=Path(args.out) if args.out else None)

    plan = result.payload.get('plan') if result.success else None
    drift = result.payload.get('drift', []) if result.success else []
    if args.json_output:
        extra: dict[str, Any] = {}
        if plan is not None:
            extra['plan'] = plan.to_dict()
            extra['summary'] = plan.summary
            extra['drift'] = [{'address': d.address, 'message': d.message} for d in drift]
        _emit_json('plan', driver, result, extra)
    elif result.success:
        for d in drift:
            print(f"  ✗ drift: {d.message}")
        print(plan.format())
    else:
        _report_failure(driver, result)
    return result.exit_code


def _execution_extra(result: PhaseResult) -> dict:
    payload = result.payload or {}
    extra: dict[str, Any] = {}
    run = payload.get('result')
    if run is not None:
        extra['run_id'] = run.run_id
        extra['counts'] = run.counts()
        extra['actions'] = [r.to_dict() for r in run.reports.values()]
    if payload.get('outputs'):
        extra['outputs'] = _outputs_json(payload['outputs'])
    return extra


def apply_main(argv: list) -> int:
    """Handle 'apply': execute a saved or fresh plan."""
    parser = _common_parser('apply', 'Apply the stack')
    parser.add_argument(
        '--plan',
        help='Plan file written by plan --out (default: compute a fresh plan)',
    )
    parser.add_argument(
        '--auto-approve', '--yes', '-y',
        action='store_true',
        dest='auto_approve',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    cancel_event = threading.Event()
    driver, rc = _build_driver(args, cancel_event)
    if driver is None:
        return rc

    logger.info(f"Applying stack from {driver.config.stack_file}")
    previous = _install_interrupt_handler(cancel_event)
    try:
        result = driver.run('apply', plan_file=Path(args.plan) if args.plan else None,
                            auto_approve=args.auto_approve)
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json_output:
        _emit_json('apply', driver, result, _execution_extra(result))
        return result.exit_code

    run = (result.payload or {}).get('result')
    if run is not None:
        print(run.summary_line())
    if result.success:
        _print_outputs(result.payload.get('outputs', {}))
    else:
        _report_failure(driver, result)
    return result.exit_code


def destroy_main(argv: list) -> int:
    """Handle 'destroy': remove every resource recorded in state."""
    parser = _common_parser('destroy', 'Destroy every resource in state')
    parser.add_argument(
        '--auto-approve', '--yes', '-y',
        action='store_true',
        dest='auto_approve',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    cancel_event = threading.Event()
    driver, rc = _build_driver(args, cancel_event)
    if driver is None:
        return rc

    logger.info(f"Destroying resources recorded in {driver.config.state_path}")
    previous = _install_interrupt_handler(cancel_event)
    try:
        result = driver.run('destroy', auto_approve=args.auto_approve)
    finally:
        signal.signal(signal.SIGINT, previous)

    if args.json_output:
        _emit_json('destroy', driver, result, _execution_extra(result))
        return result.exit_code

    run = (result.payload or {}).get('result')
    if run is not None:
        print(run.summary_line())
    if not result.success:
        _report_failure(driver, result)
    return result.exit_code


def output_main(argv: list) -> int:
    """Handle 'output': print outputs persisted by the last apply."""
    parser = _common_parser('output', 'Show stack outputs')
    parser.add_argument(
        'name',
        nargs='?',
        help='Print only this output (raw value)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    driver, rc = _build_driver(args)
    if driver is None:
        return rc
    result = driver.run('output', name=args.name)

    if args.json_output:
        extra = {'outputs': _outputs_json(result.payload)} if result.success else {}
        _emit_json('output', driver, result, extra)
    elif not result.success:
        _report_failure(driver, result)
    elif args.name:
        out = result.payload[args.name]
        value = out.value
        print(json.dumps(value) if isinstance(value, (dict, list)) else out.display())
    elif not result.payload:
        print("No outputs recorded. Run apply first.")
    else:
        for name, out in result.payload.items():
            print(f"{name} = {out.display()}")
    return result.exit_code


COMMANDS = {
    'init': (init_main, 'Create the state location and check the stack parses'),
    'validate': (validate_main, 'Validate variables, references and expressions'),
    'plan': (plan_main, 'Show the actions apply would take'),
    'apply': (apply_main, 'Create, update and destroy resources to match the stack'),
    'destroy': (destroy_main, 'Destroy every resource recorded in state'),
    'output': (output_main, 'Show outputs from the last apply'),
}
