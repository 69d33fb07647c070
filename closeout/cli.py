"""
Field Closeout — Command-Line Runner

Replays a fixture scenario through the completion pipeline and inspects
the local draft store.

Usage:
    # Run one scenario end to end (operator confirmations answered "yes")
    python -m closeout.cli run \\
        --scenario fixtures/scenarios/wo_1001_hotbill_normal.yaml --yes

    # Keep drafts and the applied-steps ledger across runs
    python -m closeout.cli run --scenario ... --draft-db /tmp/drafts.db

    # List bundled scenarios
    python -m closeout.cli list

    # Inspect / drop a saved draft
    python -m closeout.cli draft show WO-1005 --draft-db /tmp/drafts.db
    python -m closeout.cli draft clear WO-1005 --draft-db /tmp/drafts.db

Exit code 0 when the work order completed (or the command succeeded),
1 otherwise.
"""

import argparse
import json
import os
import sys
import time
from pathlib import Path

from closeout.ledger import InMemoryStepLedger, SQLiteStepLedger
from closeout.pipeline import CompletionPipeline
from fieldengine.codes import CodeBook, ReferenceData
from fieldengine.config_loader import load_config
from fieldengine.drafts import SQLiteDraftStore, create_draft_store
from fieldengine.equipment import EquipmentDispositionStore
from fieldengine.logging import configure_from_config
from fixtures.scenario import Scenario, list_scenarios

_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _confirm_callback(args):
    if args.yes:
        return lambda step, message: True
    if not sys.stdin.isatty():
        return lambda step, message: False

    def ask(step: str, message: str) -> bool:
        answer = input(f"\n  {step} failed: {message}\n  Continue anyway? [y/N] ")
        return answer.strip().lower() in ("y", "yes")
    return ask


def _merged_reference(config, scenario: Scenario) -> ReferenceData:
    base = ReferenceData.from_config(config)
    extra = scenario.reference
    return ReferenceData(
        lghv_products=base.lghv_products | extra.lghv_products,
        certify_products=base.certify_products | extra.certify_products,
        certify_so_ids=base.certify_so_ids | extra.certify_so_ids,
    )


def cmd_run(args, config) -> int:
    path = Path(args.scenario)
    if not path.exists():
        print(f"Error: scenario file not found: {args.scenario}", file=sys.stderr)
        return 1
    scenario = Scenario.load(path)

    codes = CodeBook.from_config(config)
    worker_id = str(config.get("worker.id", "") or "")
    drafts = SQLiteDraftStore(args.draft_db) if args.draft_db else create_draft_store(config)
    ledger = SQLiteStepLedger(conn=drafts.conn) if isinstance(drafts, SQLiteDraftStore) else InMemoryStepLedger()

    try:
        return _run_scenario(args, scenario, codes, worker_id, drafts, ledger, config)
    finally:
        if isinstance(drafts, SQLiteDraftStore):
            drafts.close()


def _run_scenario(args, scenario, codes, worker_id, drafts, ledger, config) -> int:
    backend = scenario.backend()
    store = EquipmentDispositionStore()
    pipeline = CompletionPipeline(
        backend, store, drafts,
        codes=codes,
        reference=_merged_reference(config, scenario),
        ledger=ledger,
        confirm=_confirm_callback(args),
        worker_id=worker_id,
        carrier_id=str(config.get("worker.carrier_id", "01")),
    )

    print(f"\n{'═' * 70}", file=sys.stderr)
    print(f"  SCENARIO: {scenario.name}", file=sys.stderr)
    print(f"{'═' * 70}", file=sys.stderr, flush=True)

    start = time.time()
    inp = scenario.prepare(backend, store, codes, worker_id)
    result = pipeline.run(inp)
    elapsed = time.time() - start

    print(f"\n  Status: {result.status.value} ({elapsed:.2f}s)", file=sys.stderr)
    if result.failed_step:
        print(f"  Failed step: {result.failed_step}", file=sys.stderr)
    for message in result.messages:
        print(f"    ✗ {message}", file=sys.stderr)
    for warning in result.warnings:
        print(f"    ! {warning}", file=sys.stderr)
    print(f"  Backend calls: {', '.join(backend.operations()) or '(none)'}", file=sys.stderr)

    output = result.to_dict()
    if args.output:
        with open(args.output, "w") as f:
            json.dump(output, f, indent=2, default=str)
        print(f"  Result saved: {args.output}", file=sys.stderr)
    else:
        print(json.dumps(output, indent=2, default=str))
    return 0 if result.ok else 1


def cmd_list(args, config) -> int:
    for path in list_scenarios():
        print(f"  {path.stem:<36} {Scenario.load(path).name}")
    return 0


def cmd_draft(args, config) -> int:
    store = SQLiteDraftStore(args.draft_db or config.get("drafts.db_path", "fieldops_drafts.db"))
    try:
        if args.action == "clear":
            store.clear(args.work_id)
            print(f"  Draft cleared: {args.work_id}", file=sys.stderr)
            return 0
        draft = store.restore(args.work_id)
        if draft is None:
            print(f"  No draft for {args.work_id}", file=sys.stderr)
            return 1
        print(json.dumps(draft, indent=2, ensure_ascii=False))
        return 0
    finally:
        store.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Field Closeout — work-order completion runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--env", default=os.environ.get("FO_ENV", "dev"),
        help="Config overlay to apply (config/{env}.yaml, default: FO_ENV or dev)",
    )
    parser.add_argument(
        "--project-root", default=os.environ.get("FO_PROJECT_ROOT", str(_PROJECT_ROOT)),
        help="Directory holding fieldops.yaml",
    )

    subs = parser.add_subparsers(dest="command", help="Command")

    # run
    run_p = subs.add_parser("run", help="Run a fixture scenario through the pipeline")
    run_p.add_argument("--scenario", "-s", required=True, help="Scenario YAML file")
    run_p.add_argument("--yes", "-y", action="store_true",
                       help="Answer yes to every operator confirmation")
    run_p.add_argument("--draft-db", help="SQLite file for drafts and the applied-steps ledger")
    run_p.add_argument("--output", "-o", help="Save result JSON")

    # list
    subs.add_parser("list", help="List bundled scenarios")

    # draft
    draft_p = subs.add_parser("draft", help="Show or clear a saved draft")
    draft_p.add_argument("action", choices=["show", "clear"])
    draft_p.add_argument("work_id")
    draft_p.add_argument("--draft-db", help="SQLite draft file (default: drafts.db_path)")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    config = load_config(env=args.env, project_root=args.project_root)
    configure_from_config(config, stream=sys.stderr)

    if args.command == "run":
        return cmd_run(args, config)
    if args.command == "list":
        return cmd_list(args, config)
    return cmd_draft(args, config)


if __name__ == "__main__":
    sys.exit(main())
