#!/usr/bin/env python3
"""
Provenance Ledger Management CLI

Commands for operating the ledger:
- verify-chain: Verify fact log hash-chain integrity
- export-facts: Export facts to JSON
- import-facts: Import facts from a JSON export into the configured store
- timeline: Print a product's history
- product: Print a product's current state
- stats: Print ledger and participant counts
- health-check: Run health checks against the configured store
- init-db: Create the PostgreSQL schema

Every read command works against the configured store, or against a JSON
export when --facts-file is given.

Usage:
    python -m tools.manage <command> [options]

Examples:
    python -m tools.manage verify-chain
    python -m tools.manage export-facts -o facts.json
    python -m tools.manage timeline 1 --facts-file facts.json
"""

import argparse
import json
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


def _read_facts_file(path):
    from provenance.schemas import TransitionFact

    with open(path) as f:
        data = json.load(f)
    return [TransitionFact.model_validate(item) for item in data]


def _open_fact_log(args):
    """The configured store, or an in-memory log replayed from --facts-file."""
    from provenance.bootstrap import create_fact_log
    from provenance.db import InMemoryFactLog

    if getattr(args, "facts_file", None):
        fact_log = InMemoryFactLog()
        fact_log.import_facts(_read_facts_file(args.facts_file))
        return fact_log
    return create_fact_log()


def _load_ledger_from(fact_log):
    from provenance.core import ProductLedger

    return ProductLedger.load_from_log(fact_log)


def _load_ledger(args):
    return _load_ledger_from(_open_fact_log(args))


def cmd_verify_chain(args):
    """Verify the integrity of the fact log chain."""
    from provenance.bootstrap import create_fact_log
    from provenance.core import ChainError, ProductLedger

    if args.facts_file:
        facts = _read_facts_file(args.facts_file)
    else:
        facts = create_fact_log().list_all()

    print(f"Loaded {len(facts)} facts")
    try:
        ProductLedger.verify_fact_chain(facts)
    except ChainError as e:
        print(f"[FAIL] Chain integrity verification FAILED: {e}")
        return 1

    print("[OK] Chain integrity verified")
    if facts:
        print(f"  Chain head: {facts[-1].fact_hash[:16]}...")
    return 0


def cmd_export_facts(args):
    """Export all facts to a JSON file."""
    fact_log = _open_fact_log(args)
    facts = fact_log.list_all()

    export_data = [fact.model_dump(mode="json") for fact in facts]

    output_file = args.output or "facts_export.json"
    with open(output_file, "w") as f:
        json.dump(export_data, f, indent=2)

    print(f"[OK] Exported {len(facts)} facts to {output_file}")
    return 0


def cmd_import_facts(args):
    """Import facts from a JSON export, validating every link."""
    from provenance.bootstrap import create_fact_log
    from provenance.db import FactLogError

    facts = _read_facts_file(args.input)
    fact_log = create_fact_log()
    try:
        count = fact_log.import_facts(facts)
    except FactLogError as e:
        print(f"[FAIL] Import rejected: {e}")
        return 1

    print(f"[OK] Imported {count} facts")
    return 0


def cmd_timeline(args):
    """Print the history of one product."""
    from provenance.core import HistoryReconstructor

    history = HistoryReconstructor(_open_fact_log(args))
    entries = history.build_timeline(args.product_id)
    if not entries:
        print(f"No history for product {args.product_id}")
        return 1

    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return 0

    for entry in entries:
        print(
            f"#{entry.sequence_number:<5} {entry.occurred_at.isoformat()}  "
            f"{entry.kind.value:<22} {entry.description}  (by {entry.actor})"
        )
    return 0


def cmd_product(args):
    """Print the current state of one product."""
    from provenance.core import NotFoundError

    ledger = _load_ledger(args)
    try:
        product = ledger.get(args.product_id)
    except NotFoundError as e:
        print(f"Error: {e}")
        return 1

    data = product.model_dump(mode="json")
    data["status_code"] = product.status.code
    data["verifications"] = [
        v.model_dump(mode="json") for v in ledger.verifications_of(args.product_id)
    ]
    print(json.dumps(data, indent=2))
    return 0


def cmd_stats(args):
    """Print counts for products, participants and facts."""
    from provenance.schemas import ProductStatus

    ledger = _load_ledger(args)
    participants = ledger.registry.list_participants()

    by_status = {status.value: 0 for status in ProductStatus}
    for product_id in range(1, ledger.total_count() + 1):
        by_status[ledger.get(product_id).status.value] += 1

    print(f"Facts:        {ledger.fact_log.get_fact_count()}")
    print(f"Products:     {ledger.total_count()}")
    print(f"Participants: {len(participants)}")
    print(f"Paused:       {'yes' if ledger.is_paused() else 'no'}")
    for status, count in by_status.items():
        if count:
            print(f"  {status}: {count}")
    return 0


def cmd_health_check(args):
    """Run health checks against the configured store."""
    from provenance.observability import check_health

    fact_log = _open_fact_log(args)
    ledger = _load_ledger_from(fact_log)
    status = check_health(ledger=ledger, fact_log=fact_log)

    print(json.dumps({
        "healthy": status.healthy,
        "checks": status.checks,
        "duration_ms": status.duration_ms,
    }, indent=2))
    return 0 if status.healthy else 1


def cmd_init_db(args):
    """Create the fact log schema in PostgreSQL."""
    from provenance.bootstrap import create_fact_log
    from provenance.db import FactLogDriver, PostgresFactLog, get_factlog_driver

    if get_factlog_driver() != FactLogDriver.PSYCOPG2:
        print("Error: no database configured (set DATABASE_URL or FACTLOG_DRIVER=psycopg2)")
        return 1

    fact_log = create_fact_log()
    if not isinstance(fact_log, PostgresFactLog):
        print("Error: configured fact log is not PostgreSQL")
        return 1
    fact_log.ensure_schema()
    print("[OK] Schema ready")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Provenance Ledger Management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    def add_facts_file(p):
        p.add_argument(
            "--facts-file",
            help="Read facts from a JSON export instead of the configured store",
        )

    p_verify = subparsers.add_parser("verify-chain", help="Verify fact log chain integrity")
    add_facts_file(p_verify)

    p_export = subparsers.add_parser("export-facts", help="Export all facts to JSON")
    p_export.add_argument("--output", "-o", help="Output file (default: facts_export.json)")
    add_facts_file(p_export)

    p_import = subparsers.add_parser("import-facts", help="Import facts into the configured store")
    p_import.add_argument("input", help="JSON export to import")

    p_timeline = subparsers.add_parser("timeline", help="Print a product's history")
    p_timeline.add_argument("product_id", type=int)
    p_timeline.add_argument("--json", action="store_true", help="Print JSON instead of text")
    add_facts_file(p_timeline)

    p_product = subparsers.add_parser("product", help="Print a product's current state")
    p_product.add_argument("product_id", type=int)
    add_facts_file(p_product)

    p_stats = subparsers.add_parser("stats", help="Print ledger statistics")
    add_facts_file(p_stats)

    p_health = subparsers.add_parser("health-check", help="Run health checks")
    add_facts_file(p_health)

    subparsers.add_parser("init-db", help="Create the PostgreSQL schema")

    return parser


def main(argv=None):
    from provenance.observability import setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    setup_logging()

    commands = {
        "verify-chain": cmd_verify_chain,
        "export-facts": cmd_export_facts,
        "import-facts": cmd_import_facts,
        "timeline": cmd_timeline,
        "product": cmd_product,
        "stats": cmd_stats,
        "health-check": cmd_health_check,
        "init-db": cmd_init_db,
    }

    return commands[args.command](args) or 0


if __name__ == "__main__":
    sys.exit(main())
