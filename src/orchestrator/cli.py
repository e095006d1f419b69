"""CLI handlers for the engine verbs.

Usage:
    iac-engine validate [-f PATH] [-var k=v] [--var-file FILE]
    iac-engine plan     [-f PATH] [--destroy] [--no-refresh] [--fail-on-drift] [--json-output]
    iac-engine apply    [-f PATH] [--concurrency N] [--timeout S] [--yes] [--json-output]
    iac-engine destroy  [-f PATH] [--yes] [--json-output]
    iac-engine refresh  [-f PATH]
    iac-engine output   [NAME] [--json-output]
    iac-engine state    list | show ADDRESS
    iac-engine taint    ADDRESS
    iac-engine untaint  ADDRESS
    iac-engine force-unlock [LOCK_ID]

Exit codes: 0 success, 1 invalid input or configuration, 2 partial apply,
3 state locked, 4 drift detected with --fail-on-drift.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, Optional

from common import DriftError, EngineError, LockConflictError, PartialApplyError
from config import ConfigError, EngineConfig, load_config
from declarations import load_declarations, load_var_file, parse_var_assignment
from expressions import to_jsonable
from orchestrator.engine import Orchestrator
from orchestrator.scheduler import Plan
from orchestrator.state import LocalStateBackend

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_PARTIAL = 2
EXIT_LOCKED = 3
EXIT_DRIFT = 4

_SYMBOLS = {
    'create': '+',
    'update': '~',
    'replace': '-/+',
    'destroy': '-',
}


def _base_parser(verb: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f'iac-engine {verb}', description=description)
    parser.add_argument(
        '--state',
        help='State file path (default: .states/state.json, or IAC_ENGINE_STATE)',
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


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with the options of verbs that read declarations."""
    parser = _base_parser(verb, description)
    parser.add_argument(
        '--file', '-f',
        default='.',
        help='Declaration file or directory (default: current directory)',
    )
    parser.add_argument(
        '-var', '--var',
        dest='var',
        action='append',
        default=[],
        metavar='KEY=VALUE',
        help='Set a root variable (repeatable)',
    )
    parser.add_argument(
        '--var-file',
        action='append',
        default=[],
        help='Load root variables from a YAML/JSON file (repeatable)',
    )
    return parser


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--concurrency',
        type=int,
        help='Maximum provider operations in flight (default: 10)',
    )
    parser.add_argument(
        '--timeout',
        type=float,
        help='Stop dispatching new operations after this many seconds',
    )
    parser.add_argument(
        '--no-refresh',
        action='store_true',
        help='Skip drift detection while planning',
    )
    parser.add_argument(
        '--fail-on-drift',
        action='store_true',
        help='Exit with code 4 instead of continuing when drift is detected',
    )


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


def _load_config(args) -> EngineConfig:
    config = load_config()
    config.override(
        state_path=args.state,
        concurrency=getattr(args, 'concurrency', None),
        timeout=getattr(args, 'timeout', None),
        refresh=False if getattr(args, 'no_refresh', False) else None,
    )
    if not args.verbose:
        logging.getLogger().setLevel(config.log_level.upper())
    return config


def _load_orchestrator(args) -> Orchestrator:
    """Load config, declarations and variables from parsed args.

    Raises:
        ConfigError, ValidationError: On invalid input
    """
    config = _load_config(args)
    path = Path(args.file)
    if not path.is_absolute():
        path = config.work_dir / path
    declarations = load_declarations(path)

    variables: dict[str, Any] = {}
    for var_file in args.var_file:
        variables.update(load_var_file(Path(var_file)))
    for assignment in args.var:
        key, value = parse_var_assignment(assignment)
        variables[key] = value

    return Orchestrator(declarations, config, variables)


def _exit_code(error: Exception) -> int:
    if isinstance(error, PartialApplyError):
        return EXIT_PARTIAL
    if isinstance(error, LockConflictError):
        return EXIT_LOCKED
    if isinstance(error, DriftError):
        return EXIT_DRIFT
    return EXIT_INVALID


def _emit_json(verb: str, success: bool, duration: float, **fields: Any) -> None:
    """Emit structured JSON output."""
    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
    }
    output.update(fields)
    print(json.dumps(to_jsonable(output), indent=2))


def _report_error(verb: str, error: Exception, json_output: bool, start: float) -> int:
    code = _exit_code(error)
    if json_output:
        fields: dict[str, Any] = {'error': str(error), 'exit_code': code}
        if isinstance(error, PartialApplyError) and error.result is not None:
            fields['nodes'] = [r.to_dict() for r in error.result.results]
        if isinstance(error, DriftError):
            fields['drift'] = [d.to_dict() for d in error.drift]
        _emit_json(verb, False, time.time() - start, **fields)
    else:
        print(f"Error: {error}", file=sys.stderr)
        if isinstance(error, LockConflictError):
            print("If no other run is active, remove the lock with: iac-engine force-unlock",
                  file=sys.stderr)
    return code


def _print_plan(plan: Plan) -> None:
    for entry in plan.drift:
        detail = f" ({', '.join(entry.changed)})" if entry.changed else ''
        print(f"  ! {entry.address} {entry.kind} outside the engine{detail}")
    if plan.drift:
        print()

    for change in plan.changes:
        if change.action == 'no-op':
            continue
        symbol = _SYMBOLS[change.action]
        label = f"{change.address} (deposed)" if change.deposed else change.address
        detail = ''
        if change.reason:
            detail = f"  # {change.reason}"
        elif change.changed:
            detail = f"  # changed: {', '.join(change.changed)}"
        print(f"  {symbol:>3} {change.action:<8} {label}{detail}")

    summary = plan.summary()
    if not plan.has_changes:
        print("No changes. Infrastructure matches the declarations.")
        return
    print()
    print(f"Plan: {summary['create']} to create, {summary['update']} to update, "
          f"{summary['replace']} to replace, {summary['destroy']} to destroy.")


def _print_outputs(outputs: dict) -> None:
    if not outputs:
        return
    print()
    print("Outputs:")
    for name, value in outputs.items():
        rendered = value if isinstance(value, str) else json.dumps(value)
        print(f"  {name} = {rendered}")


def _confirm_prompt(verb: str, json_output: bool):
    """Build a confirm callback for apply/destroy without --yes."""

    def confirm(plan: Plan) -> bool:
        if not plan.has_changes:
            return True
        out = sys.stderr if json_output else sys.stdout
        if not json_output:
            _print_plan(plan)
        if verb == 'destroy':
            print("\nWARNING: This will destroy every resource in state.", file=out)
            print("This action cannot be undone.", file=out)
        try:
            response = input("Continue? [y/N] ").strip().lower()
        except EOFError:
            response = ''
        return response == 'y'

    return confirm


def validate_main(argv: list) -> int:
    """Handle 'validate' verb."""
    parser = _common_parser('validate', 'Validate declarations, references and schemas')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    try:
        orchestrator = _load_orchestrator(args)
        graph = orchestrator.validate()
    except (EngineError, ConfigError) as e:
        return _report_error('validate', e, args.json_output, start)

    count = len(graph)
    if args.json_output:
        _emit_json('validate', True, time.time() - start, resources=graph.addresses)
    else:
        print(f"Declarations '{orchestrator.declarations.name}' are valid "
              f"({count} resource{'s' if count != 1 else ''})")
    return EXIT_OK


def plan_main(argv: list) -> int:
    """Handle 'plan' verb."""
    parser = _common_parser('plan', 'Show the changes apply would make')
    _add_run_options(parser)
    parser.add_argument(
        '--destroy',
        action='store_true',
        help='Plan destruction of every resource in state',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    try:
        orchestrator = _load_orchestrator(args)
        plan = orchestrator.plan(destroy=args.destroy)
        if args.fail_on_drift and plan.drift:
            raise DriftError(plan.drift)
    except (EngineError, ConfigError) as e:
        return _report_error('plan', e, args.json_output, start)

    if args.json_output:
        _emit_json('plan', True, time.time() - start, plan=plan.to_dict())
    else:
        _print_plan(plan)
    return EXIT_OK


def _apply_verb(verb: str, argv: list) -> int:
    description = ('Create, update and replace resources to match the declarations'
                   if verb == 'apply' else 'Destroy every resource in state')
    parser = _common_parser(verb, description)
    _add_run_options(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    confirm = None if args.yes else _confirm_prompt(verb, args.json_output)
    try:
        orchestrator = _load_orchestrator(args)
        logger.info(f"Running {verb} for '{orchestrator.declarations.name}'")
        result = orchestrator.apply(
            destroy=(verb == 'destroy'),
            fail_on_drift=args.fail_on_drift,
            confirm=confirm,
        )
    except (EngineError, ConfigError) as e:
        return _report_error(verb, e, args.json_output, start)

    if result is None:
        print("Aborted.")
        return EXIT_INVALID

    if args.json_output:
        fields = result.to_dict()
        fields.pop('success')
        fields.pop('duration')
        _emit_json(verb, result.success, time.time() - start, **fields)
    else:
        counts = {'create': 0, 'update': 0, 'destroy': 0}
        for r in result.results:
            counts[r.action] += 1
        print(f"{verb.capitalize()} complete! {counts['create']} created, "
              f"{counts['update']} updated, {counts['destroy']} destroyed.")
        _print_outputs(result.snapshot.outputs)
    return EXIT_OK


def apply_main(argv: list) -> int:
    """Handle 'apply' verb."""
    return _apply_verb('apply', argv)


def destroy_main(argv: list) -> int:
    """Handle 'destroy' verb."""
    return _apply_verb('destroy', argv)


def refresh_main(argv: list) -> int:
    """Handle 'refresh' verb: write provider-reported state into the snapshot."""
    parser = _common_parser('refresh', 'Accept drift by recording provider state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    try:
        orchestrator = _load_orchestrator(args)
        drift, snapshot = orchestrator.refresh()
    except (EngineError, ConfigError) as e:
        return _report_error('refresh', e, args.json_output, start)

    if args.json_output:
        _emit_json('refresh', True, time.time() - start,
                   drift=[d.to_dict() for d in drift], serial=snapshot.serial)
    elif drift:
        for entry in drift:
            print(f"  ! {entry.address} {entry.kind}")
        print(f"Refreshed {len(drift)} resource(s).")
    else:
        print("No drift detected.")
    return EXIT_OK


def _state_backend(args) -> LocalStateBackend:
    return LocalStateBackend(_load_config(args).resolved_state_path)


def output_main(argv: list) -> int:
    """Handle 'output' verb."""
    parser = _base_parser('output', 'Show root outputs from state')
    parser.add_argument('name', nargs='?', help='Single output to show')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    try:
        outputs = _state_backend(args).load().outputs
    except (EngineError, ConfigError) as e:
        return _report_error('output', e, args.json_output, start)

    if args.name is not None:
        if args.name not in outputs:
            print(f"Error: No output named '{args.name}'", file=sys.stderr)
            return EXIT_INVALID
        value = outputs[args.name]
        if args.json_output:
            print(json.dumps(value, indent=2))
        else:
            print(value if isinstance(value, str) else json.dumps(value))
        return EXIT_OK

    if args.json_output:
        print(json.dumps(outputs, indent=2))
    else:
        for name, value in outputs.items():
            rendered = value if isinstance(value, str) else json.dumps(value)
            print(f"{name} = {rendered}")
    return EXIT_OK


def state_main(argv: list) -> int:
    """Handle 'state list' and 'state show ADDRESS'."""
    parser = _base_parser('state', 'Inspect recorded state')
    parser.add_argument('action', choices=['list', 'show'])
    parser.add_argument('address', nargs='?')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    try:
        snapshot = _state_backend(args).load()
    except (EngineError, ConfigError) as e:
        return _report_error('state', e, args.json_output, start)

    if args.action == 'list':
        if args.json_output:
            print(json.dumps(snapshot.addresses, indent=2))
        else:
            for address in snapshot.addresses:
                entry = snapshot.get(address)
                suffix = ' (tainted)' if entry.tainted else ''
                suffix += ' (deposed instance pending destroy)' if entry.deposed else ''
                print(f"{address}{suffix}")
        return EXIT_OK

    if not args.address:
        parser.error("state show requires an ADDRESS")
    entry = snapshot.get(args.address)
    if entry is None:
        print(f"Error: No resource '{args.address}' in state", file=sys.stderr)
        return EXIT_INVALID
    print(json.dumps({'address': args.address, **entry.to_dict()}, indent=2))
    return EXIT_OK


def _status_verb(verb: str, argv: list) -> int:
    parser = _common_parser(verb, f"Mark a resource as {'tainted' if verb == 'taint' else 'applied'}")
    parser.add_argument('address')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    try:
        orchestrator = _load_orchestrator(args)
        if verb == 'taint':
            orchestrator.taint(args.address)
        else:
            orchestrator.untaint(args.address)
    except (EngineError, ConfigError) as e:
        return _report_error(verb, e, args.json_output, start)

    if args.json_output:
        _emit_json(verb, True, time.time() - start, address=args.address)
    else:
        state = 'tainted; it will be replaced on the next apply' if verb == 'taint' else 'untainted'
        print(f"Resource {args.address} is {state}.")
    return EXIT_OK


def taint_main(argv: list) -> int:
    """Handle 'taint' verb."""
    return _status_verb('taint', argv)


def untaint_main(argv: list) -> int:
    """Handle 'untaint' verb."""
    return _status_verb('untaint', argv)


def force_unlock_main(argv: list) -> int:
    """Handle 'force-unlock' verb."""
    parser = _base_parser('force-unlock', 'Remove a stale state lock')
    parser.add_argument('lock_id', nargs='?', help='Only unlock if the lock has this id')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    start = time.time()

    try:
        removed: Optional[dict] = _state_backend(args).force_unlock(args.lock_id)
    except (EngineError, ConfigError) as e:
        return _report_error('force-unlock', e, args.json_output, start)

    if args.json_output:
        _emit_json('force-unlock', True, time.time() - start, removed=removed)
    elif removed is None:
        print("State is not locked.")
    else:
        print(f"Removed lock {removed.get('id')} "
              f"(held by {removed.get('operation')}, pid {removed.get('pid')}).")
    return EXIT_OK
