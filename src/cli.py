#!/usr/bin/env python3
"""CLI entry point for repo-iac.

Noun-action subcommands:
- manifest: Repository lifecycle (render/validate/plan/apply/destroy/check/test)
- config: Site configuration (show)

Examples:
    repo-iac manifest apply -M default
    repo-iac manifest check -M default --json-output
    repo-iac config show
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

from common import mask_secret
from config import ConfigError, load_site_config, list_manifests, resolve_variable

NOUN_COMMANDS = {
    "manifest": "Repository lifecycle (render/validate/plan/apply/destroy/check/test)",
    "config": "Site configuration (show)",
}

MANIFEST_ACTIONS = {
    "render": "Write the engine configuration without running the engine",
    "validate": "Validate manifest structure and resource graph",
    "plan": "Show changes needed to converge remote state",
    "apply": "Create or update repository resources",
    "destroy": "Destroy all repository resources",
    "check": "Verify remote state is converged (re-apply is a no-op)",
    "test": "Apply, verify convergence, and destroy",
}

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version():
    """Get version from git tags (do not use hardcoded VERSION constant)."""
    try:
        result = subprocess.run(
            ['git', 'describe', '--tags', '--abbrev=0'],
            capture_output=True, text=True,
            cwd=Path(__file__).parent,
            check=False,
        )
        return result.stdout.strip() if result.returncode == 0 else 'dev'
    except OSError:
        return 'dev'


def dispatch_manifest(argv: list) -> int:
    """Dispatch 'manifest' noun to action-specific handler.

    Args:
        argv: Arguments after 'manifest' (e.g., ['apply', '-M', 'default'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: repo-iac manifest <action> [options]")
        print()
        print("Actions:")
        for action, desc in MANIFEST_ACTIONS.items():
            print(f"  {action:<9} {desc}")
        print()
        print("Run 'repo-iac manifest <action> --help' for action-specific options.")
        return 1 if not argv else 0

    action = argv[0]
    rest = argv[1:]

    from provisioner import cli as verbs
    handlers = {
        "render": verbs.render_main,
        "validate": verbs.validate_main,
        "plan": verbs.plan_main,
        "apply": verbs.apply_main,
        "destroy": verbs.destroy_main,
        "check": verbs.check_main,
        "test": verbs.test_main,
    }
    handler = handlers.get(action)
    if handler is None:
        print(f"Error: Unknown manifest action '{action}'")
        print(f"Available actions: {', '.join(MANIFEST_ACTIONS)}")
        return 1
    rc: int = handler(rest)
    return rc


def config_show(argv: list) -> int:
    """Print the resolved site configuration with secrets masked."""
    parser = argparse.ArgumentParser(
        prog='repo-iac config show',
        description='Show resolved site configuration',
    )
    parser.add_argument('--site-config', help='Site-config directory')
    parser.add_argument(
        '--variable',
        action='append',
        default=[],
        help='Also show resolution of a variable (repeatable)',
    )
    args = parser.parse_args(argv)

    try:
        config = load_site_config(args.site_config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"site-config:  {config.site_config_dir or '(none, using defaults)'}")
    print(f"tofu_binary:  {config.tofu_binary}")
    print(f"owner:        {config.owner or '(unset)'}")
    print(f"timeouts:     init={config.timeout_init}s plan={config.timeout_plan}s apply={config.timeout_apply}s")
    print(f"manifests:    {config.manifests_dir}")
    available = list_manifests(config)
    print(f"available:    {', '.join(available) if available else 'none'}")
    for name in args.variable:
        value = resolve_variable(config, name, token_variable='github_token')
        print(f"var.{name}: {mask_secret(value)}")
    return 0


def dispatch_config(argv: list) -> int:
    if not argv or argv[0] in ('-h', '--help'):
        print("Usage: repo-iac config show [--site-config DIR] [--variable NAME]")
        return 1 if not argv else 0
    if argv[0] == 'show':
        return config_show(argv[1:])
    print(f"Error: Unknown config action '{argv[0]}'")
    print("Available actions: show")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"repo-iac {get_version()}")
    print()
    print("Usage: repo-iac <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Run 'repo-iac <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  repo-iac manifest validate -M default")
    print("  repo-iac manifest apply -M default")
    print("  repo-iac manifest check -M default")
    print("  repo-iac config show --variable github_token")


def main(argv: list | None = None) -> int:
    """Main entry point."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0 if argv else 1
    if argv[0] == '--version':
        print(f"repo-iac {get_version()}")
        return 0

    noun, rest = argv[0], argv[1:]
    if noun == "manifest":
        return dispatch_manifest(rest)
    if noun == "config":
        return dispatch_config(rest)

    print(f"Error: Unknown command '{noun}'")
    print(f"Available commands: {', '.join(NOUN_COMMANDS)}")
    return 1


if __name__ == '__main__':
    sys.exit(main())
