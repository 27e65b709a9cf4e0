"""CLI handlers for deployment verbs (deploy, plan, validate, cleanup, status).

Usage:
    iac-orchestrator deploy -M <manifest> [-T <target>] [--dry-run] [--json-output] [--verbose]
    iac-orchestrator plan -M <manifest> [-T <target>]
    iac-orchestrator validate -M <manifest> [-T <target>]
    iac-orchestrator cleanup -M <manifest> [-T <target>] [--dry-run] [--yes]
    iac-orchestrator status -M <manifest> [-T <target>]

Exit codes: 0 success, 1 partial failure, 2 fatal configuration, graph or
state-store error.
"""

import argparse
import json
import logging
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from config import ConfigError, TargetConfig, list_targets, load_target_config
from deploy_opr.executor import Executor
from deploy_opr.graph import GraphError, ResourceGraph, build_from_manifest, merge_orphans
from deploy_opr.outcome import RunOutcome, RunStatus
from deploy_opr.plan import Plan, PlanAction, diff
from deploy_opr.state import ResourceState, StateStore, StateStoreError
from deploy_opr.teardown import plan_prune, plan_teardown, teardown
from deploy_opr.validator import ValidationResult, Validator
from manifest import Manifest, load_manifest
from providers import get_provider
from reporting.report import RunReport, write_report

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL = 1
EXIT_FATAL = 2


def _common_parser(verb: str, description: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for all verbs."""
    parser = argparse.ArgumentParser(
        prog=f'iac-orchestrator {verb}',
        description=description,
    )
    parser.add_argument(
        '--manifest', '-M',
        help='Manifest name from site-config/manifests/',
    )
    parser.add_argument(
        '--manifest-file',
        help='Path to manifest file (YAML or JSON)',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline manifest JSON',
    )
    parser.add_argument(
        '--target', '-T',
        help=f'Target environment (default: local rehearsal provider). '
             f'Available: {", ".join(list_targets()) or "none"}',
    )
    parser.add_argument(
        '--state-dir',
        type=Path,
        help="Override the target's state directory",
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


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show the plan without calling the provider',
    )
    parser.add_argument(
        '--max-workers',
        type=int,
        help='Concurrent provider operations (overrides manifest settings)',
    )
    parser.add_argument(
        '--report-dir',
        type=Path,
        help='Write JSON and markdown run reports to this directory',
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


def _error(message: str) -> int:
    print(f"Error: {message}", file=sys.stderr)
    return EXIT_FATAL


def _load_target(args) -> TargetConfig:
    """Target config from -T, or an ad-hoc local target."""
    if args.target:
        config = load_target_config(args.target)
    else:
        config = TargetConfig(name='local', config_file=Path('/dev/null'), provider='local')
    if args.state_dir:
        config.state_dir = args.state_dir
    return config


def _load_inputs(args) -> tuple[Manifest, ResourceGraph, TargetConfig]:
    """Load manifest, build its graph and load target config.

    Raises:
        ConfigError: Missing or invalid manifest or target
        GraphError: Cycle, unresolved dependency or duplicate name
    """
    if not args.manifest and not args.manifest_file and not args.manifest_json:
        raise ConfigError("specify a manifest with -M, --manifest-file, or --manifest-json")

    manifest = load_manifest(
        name=args.manifest,
        file_path=args.manifest_file,
        json_str=args.manifest_json,
    )
    graph = build_from_manifest(manifest)
    config = _load_target(args)

    if getattr(args, 'max_workers', None) is not None:
        if args.max_workers < 1:
            raise ConfigError("--max-workers must be at least 1")
        manifest.settings.max_workers = args.max_workers
    return manifest, graph, config


@contextmanager
def _cancel_on_interrupt(executor: Executor) -> Iterator[None]:
    """Turn SIGINT/SIGTERM into a cooperative cancel for the duration of a run."""
    def _handle(signum, _frame):
        logger.warning(f"Received signal {signum}")
        executor.cancel()

    previous = {sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _emit_json(payload: dict) -> None:
    print(json.dumps(payload, indent=2))


def _print_plan(plan: Plan) -> None:
    print(f"Plan ({plan.mode}):")
    for entry in plan.entries:
        marker = {
            PlanAction.CREATE: '+',
            PlanAction.UPDATE: '~',
            PlanAction.DELETE: '-',
        }.get(entry.action, ' ')
        print(f"  {marker} {entry.name} ({entry.spec.kind.value}): {entry.action.value}"
              f"{f' - {entry.reason}' if entry.reason else ''}")
    counts = ', '.join(f'{n} {a}' for a, n in plan.summary().items() if n)
    print(f"  {counts or 'nothing to do'}")


def _finish_run(verb: str, config: TargetConfig, outcome: RunOutcome,
                validations: list[ValidationResult], args) -> int:
    report = RunReport(verb=verb, target=config.name, outcome=outcome, validations=validations)
    paths = write_report(report, args.report_dir)
    if paths:
        logger.info(f"Report written to {paths[0]}")

    if args.json_output:
        _emit_json(report.to_dict())
    else:
        print('\n'.join(report.summary_lines()))

    if outcome.status == RunStatus.FATAL_ERROR:
        return EXIT_FATAL
    return EXIT_SUCCESS if outcome.success else EXIT_PARTIAL


def _state_store_failure(verb: str, config: TargetConfig, error: StateStoreError, args) -> int:
    """Report a run aborted by the state store; exit code is always fatal."""
    _error(f"state store: {error}")
    if error.outcome is None:
        return EXIT_FATAL
    _finish_run(verb, config, error.outcome, [], args)
    return EXIT_FATAL


def deploy_main(argv: list) -> int:
    """Handle 'deploy' verb: build graph, apply, validate."""
    parser = _common_parser('deploy', 'Create or update infrastructure from a manifest')
    _add_run_options(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, graph, config = _load_inputs(args)
    except (ConfigError, GraphError) as e:
        return _error(str(e))

    settings = manifest.settings
    store = StateStore(config.state_dir)
    try:
        with store.lock(manifest.name):
            state = store.load(manifest.name)

            if args.dry_run:
                plan = diff(graph, state)
                _, prune = plan_prune(graph, state) if settings.prune else (None, None)
                if args.json_output:
                    payload = {'verb': 'deploy', 'dry_run': True, 'plan': plan.to_dict()}
                    if prune is not None:
                        payload['prune'] = prune.to_dict()
                    _emit_json(payload)
                else:
                    _print_plan(plan)
                    if prune is not None and prune.entries:
                        _print_plan(prune)
                return EXIT_SUCCESS

            provider = get_provider(config, manifest.name)
            executor = Executor(provider=provider, store=store, settings=settings)
            logger.info(f"Deploying '{manifest.name}' to {config.name} ({len(graph)} resources)")
            with _cancel_on_interrupt(executor):
                outcome = executor.apply(graph, state)

            validations: list[ValidationResult] = []
            if settings.validate and not executor.cancelled:
                validator = Validator(provider=provider, policy=settings.readiness)
                validations = validator.verify_all(
                    store.snapshot(), names=graph.order(), max_workers=settings.max_workers,
                )
    except ConfigError as e:
        return _error(str(e))
    except StateStoreError as e:
        return _state_store_failure('deploy', config, e, args)

    return _finish_run('deploy', config, outcome, validations, args)


def plan_main(argv: list) -> int:
    """Handle 'plan' verb: print the diff without any provider call."""
    parser = _common_parser('plan', 'Show what deploy would change')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, graph, config = _load_inputs(args)
        state = StateStore(config.state_dir).load(manifest.name)
    except (ConfigError, GraphError) as e:
        return _error(str(e))
    except StateStoreError as e:
        return _error(f"state store: {e}")

    plan = diff(graph, state)
    if args.json_output:
        _emit_json({'verb': 'plan', 'deployment': manifest.name, 'plan': plan.to_dict()})
    else:
        _print_plan(plan)
    return EXIT_SUCCESS


def validate_main(argv: list) -> int:
    """Handle 'validate' verb: readiness checks against current state only."""
    parser = _common_parser('validate', 'Verify readiness of provisioned resources')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, graph, config = _load_inputs(args)
        state = StateStore(config.state_dir).load(manifest.name)
        provider = get_provider(config, manifest.name)
    except (ConfigError, GraphError) as e:
        return _error(str(e))
    except StateStoreError as e:
        return _error(f"state store: {e}")

    validator = Validator(provider=provider, policy=manifest.settings.readiness)
    checked = {
        r.name: r for r in validator.verify_all(
            state, names=graph.order(), max_workers=manifest.settings.max_workers,
        )
    }
    results = []
    for name in graph.order():
        if name in checked:
            results.append(checked[name])
        else:
            rs = state.get(name) or ResourceState(name=name, kind=graph.get_node(name).kind.value)
            results.append(ValidationResult(
                name=name, kind=rs.kind, ready=False,
                error=ValueError(f"'{name}' is {rs.status.value}"),
            ))

    ready = all(r.ready for r in results)
    if args.json_output:
        _emit_json({
            'verb': 'validate',
            'deployment': manifest.name,
            'success': ready,
            'resources': [r.to_dict() for r in results],
        })
    else:
        for r in results:
            line = f"  {'ready' if r.ready else 'NOT READY':<9} {r.name} ({r.kind})"
            if r.error is not None:
                line += f": {r.error}"
            print(line)
        print(f"{sum(r.ready for r in results)}/{len(results)} resources ready")
    return EXIT_SUCCESS if ready else EXIT_PARTIAL


def cleanup_main(argv: list) -> int:
    """Handle 'cleanup' verb: tear the deployment down, dependents first."""
    parser = _common_parser('cleanup', 'Delete every resource of a deployment')
    _add_run_options(parser)
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    parser.add_argument(
        '--keep-orphans',
        action='store_true',
        help='Leave resources that are in state but no longer in the manifest',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        manifest, graph, config = _load_inputs(args)
    except (ConfigError, GraphError) as e:
        return _error(str(e))

    store = StateStore(config.state_dir)
    try:
        with store.lock(manifest.name):
            state = store.load(manifest.name)

            if args.dry_run:
                teardown_graph = graph if args.keep_orphans else merge_orphans(graph, state)
                plan = plan_teardown(teardown_graph, state)
                if args.json_output:
                    _emit_json({'verb': 'cleanup', 'dry_run': True, 'plan': plan.to_dict()})
                else:
                    _print_plan(plan)
                return EXIT_SUCCESS

            # Confirmation for destructive operation
            if not args.yes:
                print(f"\nWARNING: This will delete every resource of deployment '{manifest.name}'.")
                print(f"Target: {config.name}")
                print("This action cannot be undone.")
                response = input("Continue? [y/N] ").strip().lower()
                if response != 'y':
                    print("Aborted.")
                    return EXIT_PARTIAL

            provider = get_provider(config, manifest.name)
            executor = Executor(provider=provider, store=store, settings=manifest.settings)
            logger.info(f"Tearing down '{manifest.name}' on {config.name}")
            with _cancel_on_interrupt(executor):
                _, outcome = teardown(executor, graph, include_orphans=not args.keep_orphans)
    except ConfigError as e:
        return _error(str(e))
    except StateStoreError as e:
        return _state_store_failure('cleanup', config, e, args)

    return _finish_run('cleanup', config, outcome, [], args)


def status_main(argv: list) -> int:
    """Handle 'status' verb: print the stored state of a deployment."""
    parser = _common_parser('status', 'Show stored deployment state')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    try:
        config = _load_target(args)
        name = args.manifest
        if not name:
            name = load_manifest(file_path=args.manifest_file, json_str=args.manifest_json).name
        state = StateStore(config.state_dir).load(name)
    except ConfigError as e:
        return _error(str(e))
    except StateStoreError as e:
        return _error(f"state store: {e}")

    if args.json_output:
        _emit_json(state.to_dict())
        return EXIT_SUCCESS

    if not state.resources:
        print(f"Deployment '{state.deployment_id}' has no recorded resources")
        return EXIT_SUCCESS

    print(f"Deployment '{state.deployment_id}' (version {state.version}):")
    for rs in state.resources.values():
        line = f"  {rs.status.value:<9} {rs.name} ({rs.kind})"
        if rs.provider_id:
            line += f" {rs.provider_id}"
        if rs.error:
            line += f": {rs.error}"
        print(line)
    return EXIT_SUCCESS


VERBS = {
    'deploy': (deploy_main, 'Build the graph, apply it and validate readiness'),
    'plan': (plan_main, 'Show what deploy would change'),
    'validate': (validate_main, 'Verify readiness of provisioned resources'),
    'cleanup': (cleanup_main, 'Tear down a deployment'),
    'status': (status_main, 'Show stored deployment state'),
}


def dispatch(verb: str, argv: list) -> Optional[int]:
    """Run a verb handler; None if the verb is unknown."""
    if verb not in VERBS:
        return None
    handler, _ = VERBS[verb]
    rc: int = handler(argv)
    return rc
