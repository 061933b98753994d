"""CLI handlers for template verb commands (validate, plan, apply) and state.

Usage:
    iac-planner template validate -T <template> [--verbose]
    iac-planner template plan -T <template> [-p name=value ...] [--parameters-file F] [--json-output]
    iac-planner template apply -T <template> [-p name=value ...] [--provider P] [--dry-run] [--yes]
    iac-planner state show -T <template> [--json-output]

Exit codes:
    0  success
    1  template, parameter or configuration error (nothing was provisioned)
    2  execution failed or was cancelled (partial state saved)
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from common import TemplateError
from config import ConfigError, Settings, load_settings
from providers import get_provider, list_providers
from template import (
    Template,
    load_parameter_file,
    load_template,
    parse_parameter_args,
    template_to_json,
)
from template_opr.evaluator import check_functions, redact
from template_opr.executor import PlanExecutor
from template_opr.graph import DependencyGraph
from template_opr.planner import ExecutionPlan, build_plan
from template_opr.state import ExecutionState

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_TEMPLATE_ERROR = 1
EXIT_EXECUTION_ERROR = 2


def _add_template_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        '--template', '-T',
        help='Template name from the templates directory',
    )
    parser.add_argument(
        '--template-file', '-f',
        help='Path to template file',
    )
    parser.add_argument(
        '--config', '-c',
        help='Path to settings file (default: discovered)',
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


def _common_parser(verb: str) -> argparse.ArgumentParser:
    """Build argument parser with common options for plan/apply."""
    parser = argparse.ArgumentParser(
        prog=f'iac-planner template {verb}',
        description=f'{verb.capitalize()} resources from a template',
    )
    _add_template_args(parser)
    parser.add_argument(
        '--param', '-p',
        action='append',
        default=[],
        metavar='NAME=VALUE',
        help='Parameter override (repeatable; values parsed as YAML)',
    )
    parser.add_argument(
        '--parameters-file',
        help='YAML/JSON file of parameter values (flags take precedence)',
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


def _load_settings(args) -> Settings:
    try:
        return load_settings(args.config)
    except ConfigError as e:
        print(f"Error loading settings: {e}", file=sys.stderr)
        sys.exit(EXIT_TEMPLATE_ERROR)


def _load_template(args, settings: Settings) -> Template:
    """Load the template named by the parsed args.

    Raises:
        SystemExit: On missing source or parse errors
    """
    if not args.template and not args.template_file:
        print("Error: specify a template with -T or --template-file", file=sys.stderr)
        sys.exit(EXIT_TEMPLATE_ERROR)
    try:
        return load_template(
            name=args.template,
            file_path=args.template_file,
            templates_dir=settings.templates_dir,
        )
    except TemplateError as e:
        print(f"Error loading template: {e}", file=sys.stderr)
        sys.exit(EXIT_TEMPLATE_ERROR)


def _collect_overrides(args) -> dict:
    """Merge parameters file and -p flags (flags win)."""
    overrides: dict = {}
    if args.parameters_file:
        overrides.update(load_parameter_file(args.parameters_file))
    overrides.update(parse_parameter_args(args.param))
    return overrides


def _plan_or_exit(args, template: Template) -> ExecutionPlan:
    try:
        return build_plan(template, _collect_overrides(args))
    except TemplateError as e:
        print(f"Planning failed ({type(e).__name__}): {e}", file=sys.stderr)
        sys.exit(EXIT_TEMPLATE_ERROR)


def _emit_json(verb: str, success: bool, state: ExecutionState, duration: float,
               secrets: list) -> None:
    """Emit structured JSON output."""
    resources = []
    for symbol, rs in state.resources.items():
        data = redact(rs.to_dict(), secrets)
        if rs.duration is not None:
            data['duration'] = round(rs.duration, 2)
        resources.append(data)

    output = {
        'verb': verb,
        'success': success,
        'duration_seconds': round(duration, 2),
        'error': redact(state.error, secrets),
        'resources': resources,
        'outputs': redact(state.outputs, secrets),
    }
    print(json.dumps(output, indent=2, default=str))


def validate_main(argv: list) -> int:
    """Handle 'template validate' verb.

    Parses the template and checks references, functions and cycles.
    Parameters are not required; only structure is checked.
    """
    parser = argparse.ArgumentParser(
        prog='iac-planner template validate',
        description='Validate template structure, references and dependency cycles',
    )
    _add_template_args(parser)
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    settings = _load_settings(args)
    template = _load_template(args, settings)

    try:
        graph = DependencyGraph(template)
        check_functions(template)
        order = graph.topological_order()
        for out in template.outputs.values():
            graph.scan(out.value, f'outputs.{out.name}')
    except TemplateError as e:
        print(f"Template '{template.name}' is invalid ({type(e).__name__}): {e}", file=sys.stderr)
        return EXIT_TEMPLATE_ERROR

    if args.json_output:
        print(template_to_json(template))
        return EXIT_SUCCESS

    for edge in graph.edges:
        logger.debug(f"{edge.source} -> {edge.target} ({edge.reason})")
    count = len(order)
    print(f"Template '{template.name}' is valid ({count} resource{'s' if count != 1 else ''}): "
          f"{' -> '.join(order)}")
    return EXIT_SUCCESS


def plan_main(argv: list) -> int:
    """Handle 'template plan' verb."""
    parser = _common_parser('plan')
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    settings = _load_settings(args)
    template = _load_template(args, settings)
    plan = _plan_or_exit(args, template)

    if args.json_output:
        print(plan.to_json())
    else:
        print(plan.preview())
    return EXIT_SUCCESS


def apply_main(argv: list) -> int:
    """Handle 'template apply' verb."""
    parser = _common_parser('apply')
    parser.add_argument(
        '--provider',
        choices=list_providers(),
        help='Provider to materialize resources with (default: from settings)',
    )
    parser.add_argument(
        '--endpoint',
        help='Endpoint for the http provider (overrides settings)',
    )
    parser.add_argument(
        '--state-dir',
        help='Directory for execution state (overrides settings)',
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Preview operations without calling the provider',
    )
    parser.add_argument(
        '--yes', '-y',
        action='store_true',
        help='Skip confirmation prompt',
    )
    args = parser.parse_args(argv)
    _setup_logging(args.verbose, args.json_output)

    settings = _load_settings(args)
    if args.provider:
        settings.provider = args.provider
    if args.endpoint:
        settings.provider_endpoint = args.endpoint
    if args.state_dir:
        settings.state_dir = Path(args.state_dir)

    template = _load_template(args, settings)
    plan = _plan_or_exit(args, template)

    try:
        provider = get_provider(settings.provider, settings)
    except (ConfigError, TemplateError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_TEMPLATE_ERROR

    # Confirmation for operations against a real provider
    if not args.dry_run and not args.yes and provider.name != 'memory':
        print(plan.preview())
        print(f"This will create or update {len(plan.operations)} resource(s) via the "
              f"{provider.name} provider. Completed operations are not rolled back on failure.")
        response = input("Continue? [y/N] ").strip().lower()
        if response != 'y':
            print("Aborted.")
            return EXIT_TEMPLATE_ERROR

    logger.info(f"Applying template '{template.name}' via {provider.name} provider")

    executor = PlanExecutor(
        plan=plan,
        provider=provider,
        dry_run=args.dry_run,
        state_dir=None if args.dry_run else settings.state_dir,
    )

    start = time.time()
    success, state = executor.apply()
    duration = time.time() - start

    if args.json_output:
        _emit_json('apply', success, state, duration, plan.evaluator.secure_values)
    elif success and not args.dry_run:
        print(json.dumps(redact(state.outputs, plan.evaluator.secure_values), indent=2, default=str))
    elif not success:
        print(f"Apply failed: {redact(state.error, plan.evaluator.secure_values)}", file=sys.stderr)
        if state.materialized:
            print(f"Materialized (left in place): {', '.join(state.materialized)}", file=sys.stderr)

    return EXIT_SUCCESS if success else EXIT_EXECUTION_ERROR


def state_main(argv: list) -> int:
    """Handle 'state show' verb: print saved execution state."""
    parser = argparse.ArgumentParser(
        prog='iac-planner state show',
        description='Show saved execution state for a template',
    )
    parser.add_argument('action', choices=['show'], help='State action')
    parser.add_argument(
        '--template', '-T',
        required=True,
        help='Template name (as recorded in state)',
    )
    parser.add_argument('--config', '-c', help='Path to settings file')
    parser.add_argument('--json-output', action='store_true', help='Print raw JSON state')
    args = parser.parse_args(argv)

    settings = _load_settings(args)
    try:
        state = ExecutionState.load(args.template, settings.state_dir)
    except FileNotFoundError:
        print(f"No saved state for template '{args.template}' under {settings.state_dir}",
              file=sys.stderr)
        return EXIT_TEMPLATE_ERROR

    if args.json_output:
        print(json.dumps(state.to_dict(), indent=2, default=str))
        return EXIT_SUCCESS

    print(f"Template: {state.template_name}")
    if state.error:
        print(f"Error: {state.error}")
    for symbol, rs in state.resources.items():
        line = f"  {symbol:<20} {rs.status:<10} {rs.name}"
        if rs.error:
            line += f"  ({rs.error})"
        print(line)
    if state.outputs:
        print("Outputs:")
        for name in state.outputs:
            print(f"  {name}")
    return EXIT_SUCCESS
