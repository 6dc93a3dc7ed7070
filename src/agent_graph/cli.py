"""
CLI for agent flows.

Provides terminal access to:
- Validation of IR documents (every error at once)
- Execution plans (topological layers)
- Running a flow against a request
"""

import sys
import json
import argparse
import importlib
from typing import Any

from agent_graph.dispatch import OperationDispatcher, OperationRegistry
from agent_graph.engine import ExecutionEngine, compile_flow, execute
from agent_graph.errors import FlowValidationError
from agent_graph.ir import load_document, validate
from agent_graph.observability import setup_logging


def load_operations(spec: str, registry: OperationRegistry) -> None:
    """
    Register operations from 'module:attr'.

    attr may be an OperationRegistry, a mapping of name to handler, or a
    callable that receives the registry and registers into it.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:attr', got {spec!r}")
    target = getattr(importlib.import_module(module_name), attr)

    if isinstance(target, OperationRegistry):
        for name in target.list_operations():
            registry.register(name, target.get(name))
    elif isinstance(target, dict):
        for name, handler in target.items():
            registry.register(name, handler)
    elif callable(target):
        target(registry)
    else:
        raise ValueError(f"{spec} is not a registry, mapping or callable")


def _print_errors(errors: list) -> None:
    print(f"\n{len(errors)} validation error(s):")
    for error in errors:
        print(f"  - {error}")


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate an IR document."""
    try:
        document = load_document(args.file)
    except FlowValidationError as e:
        _print_errors(e.errors)
        return 1

    result = validate(document)
    if isinstance(result, list):
        _print_errors(result)
        return 1

    print(f"OK: {result.name} ({len(result.nodes)} nodes, {len(result.edges)} edges)")
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    """Print the execution plan of an IR document."""
    try:
        plan = compile_flow(load_document(args.file))
    except FlowValidationError as e:
        _print_errors(e.errors)
        return 1

    if args.json:
        print(json.dumps(plan.describe(), indent=2))
        return 0

    print("\n" + "=" * 60)
    print(f"EXECUTION PLAN: {plan.name}")
    print("=" * 60)
    for depth, layer in enumerate(plan.layers):
        print(f"\nLayer {depth}:")
        for node_id in layer:
            upstream = plan.upstream(node_id)
            after = f" (after {', '.join(upstream)})" if upstream else ""
            print(f"  - {node_id}{after}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Run a flow for one request."""
    setup_logging()

    try:
        request: dict[str, Any] = json.loads(args.request) if args.request else {}
    except json.JSONDecodeError as e:
        print(f"Error: --request is not valid JSON: {e}")
        return 1

    registry = OperationRegistry()
    try:
        for spec in args.ops or []:
            load_operations(spec, registry)
    except (ImportError, AttributeError, ValueError) as e:
        print(f"Error loading operations: {e}")
        return 1

    try:
        plan = compile_flow(load_document(args.file))
    except FlowValidationError as e:
        _print_errors(e.errors)
        return 1

    engine = ExecutionEngine(dispatcher=OperationDispatcher(registry=registry))
    result = execute(plan, request, engine=engine, deadline=args.deadline)
    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.is_success else 1


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Agent Graph CLI - validate, plan and run agent flows",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    # validate command
    validate_parser = subparsers.add_parser('validate', help='Validate an IR document')
    validate_parser.add_argument('file', help='IR document (.json, .yaml or .yml)')

    # plan command
    plan_parser = subparsers.add_parser('plan', help='Show the execution plan')
    plan_parser.add_argument('file', help='IR document (.json, .yaml or .yml)')
    plan_parser.add_argument('--json', action='store_true', help='Print the plan as JSON')

    # run command
    run_parser = subparsers.add_parser('run', help='Run a flow')
    run_parser.add_argument('file', help='IR document (.json, .yaml or .yml)')
    run_parser.add_argument('--request', help='Request JSON (context fields and "inputs")')
    run_parser.add_argument('--ops', action='append',
                            help="Operations to register, as 'module:attr' (repeatable)")
    run_parser.add_argument('--deadline', type=float, help='Run deadline in seconds')

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    if args.command == 'validate':
        return cmd_validate(args)
    elif args.command == 'plan':
        return cmd_plan(args)
    elif args.command == 'run':
        return cmd_run(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
