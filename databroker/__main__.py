"""CLI entry point for inspecting and querying a configured broker.

Usage:
    python -m databroker describe books.yaml
    python -m databroker explain books.yaml --where '{"field": "format", "op": "eq", "value": "Pdf"}'
    python -m databroker query books.yaml --sort year:desc --limit 10
    python -m databroker query books.yaml --where '{"field": "year", "op": "lt", "value": 1900}' --json
    python -m databroker validate books.yaml
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, List, Optional, Sequence

from databroker.lib.broker import Broker, QueryResult
from databroker.lib.config_loader import YAMLConfigError, load_broker, validate_broker_config
from databroker.lib.errors import BrokerError
from databroker.lib.logging import setup_logging
from databroker.lib.query import Query, SortKey, predicate_from_dict
from databroker.lib.record import Conflict

logger = logging.getLogger(__name__)


def build_query(
    where: Optional[str] = None,
    sort: Sequence[str] = (),
    select: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    cursor: Optional[str] = None,
) -> Query:
    """Assemble a Query from CLI arguments.

    Raises:
        ValueError: If ``--where`` is not a valid predicate
    """
    query = Query()
    if where:
        try:
            data = json.loads(where)
        except json.JSONDecodeError as e:
            raise ValueError(f"--where is not valid JSON: {e}") from e
        query = query.filter(predicate_from_dict(data))
    if sort:
        query = query.order_by(*[SortKey.parse(s) for s in sort])
    if select:
        query = query.select(*[f.strip() for f in select.split(",") if f.strip()])
    if cursor:
        query = query.after(cursor, limit=limit)
    elif limit is not None or offset:
        query = query.page(offset=offset, limit=limit)
    return query


def _cell(value: Any) -> str:
    if isinstance(value, Conflict):
        return "CONFLICT(" + " | ".join(repr(v) for v in value.values) + ")"
    return repr(value)


def describe_broker(broker: Broker) -> None:
    """Print registered connectors, roles, capabilities and constraints."""
    print()
    print("=" * 60)
    print(f"BROKER: {broker.record_type.name}")
    print("=" * 60)
    keys = ", ".join("+".join(group) for group in broker.record_type.identity_keys) or "(none)"
    print(f"Identity keys: {keys}")
    print()
    for descriptor in broker.describe():
        print(f"{descriptor['name']} ({descriptor['role']}, {descriptor['wire_format'] or 'n/a'})")
        print("-" * 40)
        caps = descriptor["capabilities"]
        filters = "; ".join(f"{k}: {', '.join(v)}" for k, v in caps["filters"].items()) or "(none)"
        print(f"  Filters:      {filters}")
        print(f"  Combinators:  {', '.join(caps['combinators']) or '(none)'}")
        if caps["sort_any"]:
            sorts = "any"
        else:
            sorts = "; ".join(", ".join(seq) for seq in caps["sort_sequences"]) or "(none)"
        print(f"  Sort:         {sorts}")
        print(f"  Pagination:   {'yes' if caps['pagination'] else 'no'}")
        for constraint in descriptor["constraints"]:
            print(f"  {constraint['kind'].capitalize():<13} {constraint['name']}: {constraint['predicate']}")
        print()
    print("=" * 60)


def explain_query(broker: Broker, query: Query) -> None:
    """Print what each source would be asked, without calling any."""
    print()
    print("=" * 60)
    print("QUERY PLAN")
    print("=" * 60)
    print(f"Query: {query}")
    print()
    for plan in broker.plan(query):
        print(f"{plan.source}:")
        if not plan.eligible or plan.translation is None:
            print("  SKIPPED - guarantees exclude every match")
            continue
        translation = plan.translation
        print(f"  Native:   {translation.compiled.to_query()}")
        print(f"  Residual: {translation.residual}")
        print(f"  Kind:     {translation.kind.value}")
    print()
    print("=" * 60)


def print_result(result: QueryResult) -> None:
    """Print merged records in a readable format."""
    print()
    print("=" * 60)
    total = str(result.total) if result.total_exact else f"at least {result.total}"
    print(f"Round {result.round_id}: {len(result)} of {total} merged records")
    print("=" * 60)
    for merged in result:
        fields = ", ".join(f"{k}={_cell(v)}" for k, v in merged.record.items())
        print(f"  {fields}")
        print(f"    sources: {', '.join(merged.sources)}")
        for name in merged.conflicts:
            origins = "; ".join(f"{c.source}={c.value!r}" for c in merged.provenance.get(name, []))
            print(f"    conflict on {name}: {origins}")
    if result.skipped:
        print(f"Skipped: {', '.join(result.skipped)}")
    for failure in result.degraded:
        print(f"DEGRADED - {failure.source} ({failure.reason}): {failure.message}")
    for note in result.fallbacks:
        print(f"Fallback: {note.describe()}")
    if result.next_cursor:
        print(f"Next cursor: {result.next_cursor}")
    print("=" * 60)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="databroker",
        description="Inspect and query a data broker defined in YAML",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Show connectors and their declared capabilities
    python -m databroker describe books.yaml

    # Show which sources would be skipped and what runs natively
    python -m databroker explain books.yaml --where '{"field": "format", "op": "eq", "value": "Pdf"}'

    # Run a federation round, newest first
    python -m databroker query books.yaml --sort year:desc --limit 10

    # Machine-readable output
    python -m databroker query books.yaml --json
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument("--env-file", help="Load environment variables from this .env file first")

    commands = parser.add_subparsers(dest="command", required=True)

    describe = commands.add_parser("describe", help="Show registered connectors")
    describe.add_argument("config", help="Broker YAML file")

    validate_cmd = commands.add_parser("validate", help="Validate a broker YAML file")
    validate_cmd.add_argument("config", help="Broker YAML file")

    for name, help_text in (("query", "Run a federation round"), ("explain", "Show the per-source plan")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("config", help="Broker YAML file")
        sub.add_argument("--where", help="Predicate as JSON, e.g. '{\"field\": \"year\", \"op\": \"lt\", \"value\": 1900}'")
        sub.add_argument("--sort", action="append", default=[], help="FIELD or FIELD:desc (repeatable)")
        sub.add_argument("--select", help="Comma-separated fields to return")
        sub.add_argument("--limit", type=int, help="Maximum merged records")
        sub.add_argument("--offset", type=int, default=0, help="Merged records to skip")
        sub.add_argument("--cursor", help="Continue from a previous next_cursor")
        if name == "query":
            sub.add_argument("--json", action="store_true", help="Print the result as JSON")

    args = parser.parse_args(argv)

    setup_logging(verbose=args.verbose, json_format=args.json_logs, log_file=args.log_file)

    if args.command == "validate":
        errors = validate_broker_config(args.config)
        if errors:
            for error in errors:
                print(f"ERROR: {error}")
            sys.exit(1)
        print(f"{args.config}: OK")
        return

    try:
        broker = load_broker(args.config, env_file=args.env_file)
    except (YAMLConfigError, FileNotFoundError) as e:
        print(f"\nError: {e}")
        sys.exit(1)

    try:
        with broker:
            if args.command == "describe":
                describe_broker(broker)
                return

            query = build_query(args.where, args.sort, args.select, args.limit, args.offset, args.cursor)
            if args.command == "explain":
                explain_query(broker, query)
                return

            result = broker.query(query)
            if args.json:
                print(json.dumps(result.to_dict(), indent=2, default=str))
            else:
                print_result(result)

    except KeyboardInterrupt:
        print("\nInterrupted by user")
        sys.exit(130)

    except (BrokerError, ValueError) as e:
        logger.error("Command failed: %s", e)
        print(f"\nError: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
