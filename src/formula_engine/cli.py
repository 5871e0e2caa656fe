"""Command line entry point.

    formula-engine check catalog.yaml
    formula-engine render catalog.yaml template.txt --bindings lead.yaml
    formula-engine eval catalog.yaml "[calc:annual_savings] / 12" --bindings lead.json

Exits 0 on success, 1 on catalog or render errors.
"""

import argparse
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any

import yaml

from .catalog import Catalog, CatalogError, load_catalog
from .config import configure_logging, load_settings
from .dependencies import CycleError, build_graph
from .parser import ParseError, parse
from .shortcodes import RECOVERABLE, RenderError, ShortcodeResolver

logger = logging.getLogger(__name__)


def load_bindings(path: Path | None) -> dict[str, Any]:
    if path is None:
        return {}
    with open(path) as f:
        if path.suffix == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise CatalogError(f"{path}: bindings must be a mapping of field name to value")
    return data


def check_catalog(catalog: Catalog) -> list[str]:
    """Problems an administrator should fix: syntax errors, cycles, dangling references."""
    problems = []

    for formula in catalog.formulas:
        try:
            parse(formula.expression)
        except ParseError as e:
            problems.append(f"formula {formula.name}: {e}")
    for table in catalog.lookups:
        for condition in table.active_conditions():
            try:
                parse(condition.condition_expression)
            except ParseError as e:
                problems.append(f"lookup {table.name} row {condition.order}: {e}")

    graph = build_graph(catalog)
    try:
        graph.topological_sort()
    except CycleError as e:
        problems.append(str(e))
    for node, refs in graph.dangling.items():
        for kind, name in refs:
            problems.append(f"{node}: {kind} not found: {name!r}")

    return problems


def cmd_check(args: argparse.Namespace) -> int:
    catalog = load_catalog(args.catalog)
    problems = check_catalog(catalog)
    for problem in problems:
        print(f"  FAIL  {problem}")
    print(f"  {len(catalog.formulas)} formulas, {len(catalog.lookups)} lookup tables, {len(problems)} problems")
    return 1 if problems else 0


def _resolver(args: argparse.Namespace) -> ShortcodeResolver:
    settings = load_settings(args.settings)
    return ShortcodeResolver(load_catalog(args.catalog), settings=settings)


def cmd_render(args: argparse.Namespace) -> int:
    resolver = _resolver(args)
    template = sys.stdin.read() if args.template == "-" else Path(args.template).read_text()
    bindings = load_bindings(args.bindings)

    try:
        result = resolver.render(template, bindings, args.session, deadline=args.deadline)
    except RenderError as e:
        sys.stdout.write(e.result.text)
        for failure in e.failures:
            print(f"error: {failure.token}: {failure.error}", file=sys.stderr)
        return 1

    sys.stdout.write(result.text)
    for failure in result.failures:
        print(f"warning: {failure.token}: {failure.error}", file=sys.stderr)
    return 0


def cmd_eval(args: argparse.Namespace) -> int:
    resolver = _resolver(args)
    bindings = load_bindings(args.bindings)
    try:
        value = resolver.compute(args.expression, bindings, args.session, deadline=args.deadline)
    except RECOVERABLE as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    print(value)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="formula-engine", description="Evaluate calculator formulas and shortcodes")
    parser.add_argument("--settings", type=Path, help="YAML settings file")
    parser.add_argument("--verbose", "-v", action="count", default=0)
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Validate a catalog")
    check.add_argument("catalog", type=Path)
    check.set_defaults(func=cmd_check)

    for name, handler, help_text in (
        ("render", cmd_render, "Render a template file ('-' for stdin)"),
        ("eval", cmd_eval, "Evaluate one expression"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("catalog", type=Path)
        cmd.add_argument("template" if name == "render" else "expression")
        cmd.add_argument("--bindings", "-b", type=Path, help="YAML or JSON file of field values")
        cmd.add_argument("--session", default=None, help="Session id (default: random)")
        cmd.add_argument("--deadline", type=float, default=None, help="Time budget in seconds")
        cmd.set_defaults(func=handler)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    settings = load_settings(args.settings)
    level = {0: settings.log_level, 1: "INFO"}.get(args.verbose, "DEBUG")
    configure_logging(level)

    if getattr(args, "session", "") is None:
        args.session = uuid.uuid4().hex

    try:
        return args.func(args)
    except (CatalogError, OSError, yaml.YAMLError) as e:
        logger.debug("command failed", exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
