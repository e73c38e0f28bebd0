"""
backend/scripts/sync_entities.py

Purpose:
    Run one reconciliation sync (or a dry-run preview) for a single entity
    type from the command line. Uses the same orchestrator, lock and batch
    audit trail as the admin API, with trigger "cli".

Usage:
    cd backend && python -m scripts.sync_entities countries
    cd backend && python -m scripts.sync_entities leagues --filter country_external_id=462
    cd backend && python -m scripts.sync_entities fixtures --filter from=2025-03-01 --filter to=2025-03-02 --status mismatch --dry-run
    cd backend && python -m scripts.sync_entities fixtures --filter from=2025-03-01 --filter to=2025-03-01 --external-id 19135003 --confirm 19135003:state,result
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import signal
from typing import Any

import sportsync.database as _db
from sportsync.middleware.logging import setup_logging
from sportsync.models.sync import BatchTrigger, SyncSelection
from sportsync.providers.sportmonks import SportmonksProvider
from sportsync.services.settlement_trigger import wait_for_background_tasks
from sportsync.services.sync_orchestrator import SyncOrchestrator, selection_statuses


def _parse_filters(pairs: list[str]) -> dict[str, Any]:
    filters: dict[str, Any] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise SystemExit(f"Invalid --filter {pair!r}; expected key=value")
        filters[key.strip()] = value.strip()
    return filters


def _parse_confirmations(values: list[str]) -> dict[str, list[str]]:
    confirmed: dict[str, list[str]] = {}
    for raw in values:
        external_id, sep, fields = raw.partition(":")
        if not sep or not external_id.strip():
            raise SystemExit(f"Invalid --confirm {raw!r}; expected external_id:field[,field]")
        names = [name.strip() for name in fields.split(",") if name.strip()]
        confirmed.setdefault(external_id.strip(), []).extend(names)
    return confirmed


async def _run(args: argparse.Namespace) -> int:
    try:
        selection = SyncSelection(
            external_ids=list(args.external_id or []),
            statuses=selection_statuses(args.status or []),
            confirmed_overrides=_parse_confirmations(args.confirm or []),
        )
    except ValueError as exc:
        print(f"[sync] {exc}")
        return 2
    filters = _parse_filters(args.filter or [])

    await _db.connect_db()
    provider = SportmonksProvider()
    orchestrator = SyncOrchestrator(provider)
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        if args.dry_run:
            preview = await orchestrator.preview_sync(args.entity_type, selection, filters)
            print(f"[sync] dry-run {preview.entity_type} scope={preview.scope} total={preview.total}")
            print("[sync] summary:", preview.summary)
            for item in preview.items:
                if item.action == "unchanged":
                    continue
                detail = item.error or ", ".join(item.changed_fields + [f"!{name}" for name in item.conflict_fields])
                print(f"  {item.action:<9} {item.external_id or '-':<12} {detail}")
            return 0

        result = await orchestrator.sync_entities(
            args.entity_type,
            selection,
            filters,
            trigger=BatchTrigger.cli,
            triggered_by=args.triggered_by,
            cancel_event=cancel_event,
        )
        print(
            f"[sync] batch={result.batch_id} status={result.status.value} "
            f"ok={result.ok} fail={result.fail} total={result.total}"
        )
        if result.first_error:
            print(f"[sync] first_error: {result.first_error}")
        if result.settlement_triggered:
            print("[sync] settlement recompute triggered")
        return 0 if result.fail == 0 else 1
    finally:
        await wait_for_background_tasks()
        await provider.aclose()
        await _db.close_db()


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync one reference entity type from Sportmonks into MongoDB")
    parser.add_argument("entity_type", help="countries, leagues, seasons, teams, bookmakers, fixtures or odds")
    parser.add_argument("--filter", action="append", default=[], help="Filter as key=value (repeatable)")
    parser.add_argument("--external-id", action="append", default=[], help="Only sync this external id (repeatable)")
    parser.add_argument("--status", action="append", default=[], help="Only sync records with this diff status (repeatable)")
    parser.add_argument(
        "--confirm",
        action="append",
        default=[],
        help="Confirm overwriting overridden fields, as external_id:field[,field] (repeatable)",
    )
    parser.add_argument("--dry-run", action="store_true", help="Preview the sync without writing")
    parser.add_argument("--triggered-by", default=None, help="Operator name recorded on the batch")
    return parser


def main() -> int:
    setup_logging()
    parser = _build_parser()
    args = parser.parse_args()
    if not args.triggered_by:
        args.triggered_by = getpass.getuser()
    return asyncio.run(_run(args))


if __name__ == "__main__":
    raise SystemExit(main())
