"""CLI handlers for manifest verbs (render, validate, plan, apply, destroy, check, test).

Usage:
    repo-iac manifest render   -M <manifest> [--output DIR]
    repo-iac manifest validate -M <manifest> [--verbose]
    repo-iac manifest plan     -M <manifest> [--destroy] [--json-output]
    repo-iac manifest apply    -M <manifest> [--dry-run] [--json-output] [--verbose]
    repo-iac manifest destroy  -M <manifest> [--dry-run] [--yes]
    repo-iac manifest check    -M <manifest> [--json-output]
    repo-iac manifest test     -M <manifest> [--dry-run] [--json-output]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

from config import ConfigError, get_base_dir, load_site_config, list_manifests
from manifest import load_manifest, summarize
from provisioner.executor import ProvisionExecutor
from provisioner.graph import ResourceGraph
from provisioner.render import render_resources, write_workspace
from reporting.report import RunReport
from validation import validate_owner, validate_readiness, validate_structure, validate_templates

logger = logging.getLogger(__name__)


def _add_manifest_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--manifest', '-M',
        help='Manifest name from manifests/',
    )
    parser.add_argument(
        '--manifest-file',
        help='Path to manifest file',
    )
    parser.add_argument(
        '--manifest-json',
        help='Inline manifest JSON',
    )
    parser.add_argument(
        '--site-config',
        help='Site-config directory (override: REPO_IAC_SITE_CONFIG env var)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for engine verbs."""
    parser = argparse.ArgumentParser(
        prog=f'repo-iac manifest {verb}',
        description=f'{verb.capitalize()} repository resources from manifest',
    )
    _add_manifest_args(parser)
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without invoking the engine',
    )
    parser.add_argument(
        '--json-output',
        action='store_true',
        help='Output structured JSON to stdout (logs to stderr)',
    )
    parser.add_argument(
        '--skip-preflight',
        action='store_true',
        help='Skip pre-flight validation checks',
    )
    parser.add_argument(
        '--report-dir',
        type=Path,
        help='Write JSON and Markdown run reports to this directory',
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


def _load_manifest_and_config(args):
    """Load site config and manifest from parsed args.

    Returns:
        (manifest, config) tuple

    Raises:
        SystemExit: On configuration errors
    """
    try:
        config = load_site_config(args.site_config)
    except ConfigError as e:
        print(f"Error loading site-config: {e}", file=sys.stderr)
        sys.exit(1)

    if not args.manifest and not args.manifest_file and not args.manifest_json:
        available = list_manifests(config)
        print("Error: specify a manifest with -M, --manifest-file, or --manifest-json",
              file=sys.stderr)
        print(f"Available: {', '.join(available) if available else 'none'}", file=sys.stderr)
        sys.exit(1)

    try:
        manifest = load_manifest(
            config,
            name=args.manifest,
            file_path=args.manifest_file,
            json_str=args.manifest_json,
        )
    except ConfigError as e:
        print(f"Error loading manifest: {e}", file=sys.stderr)
        sys.exit(1)

    return manifest, config


def _build_executor(args, manifest, config, verb: str) -> ProvisionExecutor:
    try:
        return ProvisionExecutor(
            manifest=manifest,
            config=config,
            dry_run=getattr(args, 'dry_run', False),
            report=RunReport(manifest=manifest.name, verb=verb, report_dir=args.report_dir),
        )
    except ConfigError as e:
        print(f"Error: manifest '{manifest.name}' is invalid: {e}", file=sys.stderr)
        sys.exit(1)


def _run_preflight(args, manifest, config, executor: ProvisionExecutor) -> int | None:
    """Run preflight checks for engine verbs.

    Returns:
        None if checks pass, exit code (1) if checks fail.
    """
    if args.skip_preflight or args.dry_run:
        return None

    workspace = executor.workspace
    assert workspace is not None
    errors = validate_readiness(manifest, config, lockfile=workspace.lockfile)
    if errors:
        print("\nPre-flight validation failed:", file=sys.stderr)
        for error in errors:
            for i, line in enumerate(error.split('\n')):
                prefix = "  ✗ " if i == 0 else "    "
                print(f"{prefix}{line}", file=sys.stderr)
        print("\nUse --skip-preflight to bypass these checks\n", file=sys.stderr)
        return 1
    logger.info("Pre-flight validation passed")
    return None


def _emit_json(verb: str, success: bool, state, report: RunReport, context: dict) -> None:
    """Emit structured JSON output."""
    resources = []
    for address, rs in state.resources.items():
        entry = {'address': address, 'status': rs.status}
        if rs.action is not None:
            entry['action'] = rs.action
        if rs.error is not None:
            entry['error'] = rs.error
        resources.append(entry)

    output = report.to_dict(context)
    output['verb'] = verb
    output['success'] = success
    output['resources'] = resources
    print(json.dumps(output, indent=2))


def _finish(verb: str, args, executor: ProvisionExecutor, success: bool, state, context: dict) -> int:
    report = executor.report
    assert report is not None
    report.record_resources(state)
    for path in report.finish(success):
        logger.info(f"Report written: {path}")
    if args.json_output:
        _emit_json(verb, success, state, report, context)
    return 0 if success else 1


def _verb_main(verb: str, argv: list, extra_args=None) -> tuple:
    parser = _common_parser(verb)
    if extra_args:
        extra_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)
    manifest, config = _load_manifest_and_config(args)
    executor = _build_executor(args, manifest, config, verb)
    executor.report.start()
    return args, manifest, config, executor


def plan_main(argv: list) -> int:
    """Handle 'manifest plan' verb."""
    def extra(parser):
        parser.add_argument('--destroy', action='store_true', help='Plan removal of all resources')

    args, manifest, config, executor = _verb_main('plan', argv, extra)
    preflight_rc = _run_preflight(args, manifest, config, executor)
    if preflight_rc is not None:
        return preflight_rc

    context: dict = {}
    success, state = executor.plan(context, destroy=args.destroy)
    if success and not args.dry_run and not args.json_output:
        plan = context.get('plan', {})
        print(f"Plan: {plan.get('add', 0)} to add, {plan.get('change', 0)} to change, "
              f"{plan.get('destroy', 0)} to destroy")
        for address, action in plan.get('changes', {}).items():
            print(f"  {action:<8} {address}")
    return _finish('plan', args, executor, success, state, context)


def apply_main(argv: list) -> int:
    """Handle 'manifest apply' verb."""
    args, manifest, config, executor = _verb_main('apply', argv)
    preflight_rc = _run_preflight(args, manifest, config, executor)
    if preflight_rc is not None:
        return preflight_rc

    logger.info(f"Applying manifest '{manifest.name}' to {manifest.repository.name}")
    context: dict = {}
    success, state = executor.apply(context)
    return _finish('apply', args, executor, success, state, context)


def destroy_main(argv: list) -> int:
    """Handle 'manifest destroy' verb."""
    def extra(parser):
        parser.add_argument('--yes', '-y', action='store_true', help='Skip confirmation prompt')

    args, manifest, config, executor = _verb_main('destroy', argv, extra)
    preflight_rc = _run_preflight(args, manifest, config, executor)
    if preflight_rc is not None:
        return preflight_rc

    if not args.dry_run and not args.yes:
        print(f"\nWARNING: This will destroy every resource in manifest '{manifest.name}',")
        print(f"including the repository '{manifest.repository.name}'.")
        print("This action cannot be undone.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return 1

    logger.info(f"Destroying manifest '{manifest.name}'")
    context: dict = {}
    success, state = executor.destroy(context)
    return _finish('destroy', args, executor, success, state, context)


def check_main(argv: list) -> int:
    """Handle 'manifest check' verb: exit 0 only when remote state is converged."""
    args, manifest, config, executor = _verb_main('check', argv)
    preflight_rc = _run_preflight(args, manifest, config, executor)
    if preflight_rc is not None:
        return preflight_rc

    context: dict = {}
    success, state = executor.check(context)
    if not args.json_output and not args.dry_run:
        print("Converged: no changes" if success else "Not converged")
    return _finish('check', args, executor, success, state, context)


def test_main(argv: list) -> int:
    """Handle 'manifest test' verb: apply, verify idempotence, destroy."""
    args, manifest, config, executor = _verb_main('test', argv)
    preflight_rc = _run_preflight(args, manifest, config, executor)
    if preflight_rc is not None:
        return preflight_rc

    logger.info(f"Testing manifest '{manifest.name}'")
    context: dict = {}
    success, state = executor.test(context)
    return _finish('test', args, executor, success, state, context)


def render_main(argv: list) -> int:
    """Handle 'manifest render' verb: write the engine configuration only."""
    parser = argparse.ArgumentParser(
        prog='repo-iac manifest render',
        description='Render manifest into an engine configuration directory',
    )
    _add_manifest_args(parser)
    parser.add_argument(
        '--output', '-o',
        type=Path,
        help='Output directory (default: .states/<manifest>/work)',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, False)

    manifest, config = _load_manifest_and_config(args)
    output = args.output or get_base_dir() / '.states' / manifest.name / 'work'
    try:
        path = write_workspace(manifest, output, config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    print(f"Rendered manifest '{manifest.name}' to {path}")
    return 0


def validate_main(argv: list) -> int:
    """Handle 'manifest validate' verb.

    Validates manifest schema and references, the resource graph (dangling
    references, cycles), template files, and structural ordering/policy
    properties. Does not invoke the engine.
    """
    parser = argparse.ArgumentParser(
        prog='repo-iac manifest validate',
        description='Validate manifest structure and resource graph',
    )
    _add_manifest_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, False)

    manifest, config = _load_manifest_and_config(args)

    errors: list[str] = []
    try:
        graph = ResourceGraph(render_resources(manifest))
    except ConfigError as e:
        errors.append(str(e))
    else:
        errors.extend(validate_structure(manifest, graph))
        for node in graph.create_order():
            logger.debug(f"[{node.depth}] {node.address} <- {', '.join(graph.dependencies(node.address)) or '-'}")

    errors.extend(validate_templates(manifest))
    errors.extend(validate_owner(manifest, config))

    if errors:
        print(f"Manifest '{manifest.name}' has {len(errors)} validation error(s):", file=sys.stderr)
        for error in errors:
            print(f"  ✗ {error}", file=sys.stderr)
        return 1

    counts = summarize(manifest)
    detail = ', '.join(f"{n} {k.replace('_', ' ')}" for k, n in counts.items() if n)
    print(f"Manifest '{manifest.name}' is valid ({len(graph)} resources: {detail})")
    return 0
