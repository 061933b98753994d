#!/usr/bin/env python3
"""CLI entry point for iac-planner.

Noun-action subcommands:
- template: Template lifecycle (validate/plan/apply)
- state: Saved execution state (show)

Examples:
    iac-planner template plan -f templates/webapp.yaml -p environment=dev
    iac-planner template apply -T webapp --dry-run
    iac-planner state show -T webapp
"""

import logging
import sys
from importlib.metadata import PackageNotFoundError, version

from providers import PROVIDERS

# Noun commands (noun-action subcommands)
NOUN_COMMANDS = {
    "template": "Template lifecycle (validate/plan/apply)",
    "state": "Saved execution state (show)",
}

HELP_FLAGS = ('-h', '--help')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    """Get installed package version ('dev' when running from a checkout)."""
    try:
        return version('iac-planner')
    except PackageNotFoundError:
        return 'dev'


def dispatch_template(argv: list) -> int:
    """Dispatch 'template' noun to action-specific handler.

    Args:
        argv: Arguments after 'template' (e.g., ['plan', '-T', 'webapp'])

    Returns:
        Exit code
    """
    if not argv or argv[0].startswith('-'):
        print("Usage: iac-planner template <action> [options]")
        print()
        print("Actions:")
        print("  validate  Check template structure, references and cycles")
        print("  plan      Resolve parameters and print the ordered operations")
        print("  apply     Materialize resources through a provider")
        print()
        print("Run 'iac-planner template <action> --help' for action-specific options.")
        return 0 if argv and argv[0] in HELP_FLAGS else 1

    action = argv[0]
    rest = argv[1:]

    if action == "validate":
        from template_opr.cli import validate_main
        rc: int = validate_main(rest)
        return rc
    if action == "plan":
        from template_opr.cli import plan_main
        rc = plan_main(rest)
        return rc
    if action == "apply":
        from template_opr.cli import apply_main
        rc = apply_main(rest)
        return rc

    print(f"Error: Unknown template action '{action}'")
    print("Available actions: validate, plan, apply")
    return 1


def dispatch_noun(noun: str, argv: list) -> int:
    """Dispatch to noun-specific CLI handler.

    Args:
        noun: The noun command (e.g., "template", "state")
        argv: Remaining command line arguments

    Returns:
        Exit code
    """
    if noun == "template":
        return dispatch_template(argv)

    if noun == "state":
        if not argv or argv[0].startswith('-'):
            print("Usage: iac-planner state show -T <template> [--json-output]")
            return 0 if argv and argv[0] in HELP_FLAGS else 1
        from template_opr.cli import state_main
        rc: int = state_main(argv)
        return rc

    print(f"Error: Noun '{noun}' not yet implemented")
    return 1


def print_usage():
    """Print top-level usage showing noun commands."""
    print(f"iac-planner {get_version()}")
    print()
    print("Usage: iac-planner <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Providers:")
    for name, desc in PROVIDERS.items():
        print(f"  {name:<12} {desc}")
    print()
    print("Run 'iac-planner <noun> --help' for command-specific options.")
    print()
    print("Examples:")
    print("  iac-planner template validate -f templates/webapp.yaml")
    print("  iac-planner template plan -f templates/webapp.yaml -p environment=dev")
    print("  iac-planner template apply -f templates/webapp.yaml --provider memory")
    print("  iac-planner state show -T webapp")


def main(argv: list = None) -> int:
    """CLI entry point: dispatch to noun-action handlers."""
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in HELP_FLAGS:
        print_usage()
        return 0

    first_arg = argv[0]
    if first_arg == '--version':
        print(f"iac-planner {get_version()}")
        return 0

    if first_arg in NOUN_COMMANDS:
        return dispatch_noun(first_arg, argv[1:])

    print(f"Error: Unknown command '{first_arg}'")
    print_usage()
    return 1


if __name__ == '__main__':
    sys.exit(main())
