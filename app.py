#!/usr/bin/env python3
"""
Vault Ledger - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
Wires the ledgers into one runtime:

1. Load settings (defaults, YAML, environment)
2. Rebuild ledger state from the database
3. Replay a JSONL chain event file through the dispatcher
4. Persist the resulting state in one transaction
5. Optionally run one allocation reconciliation cycle

============================================================
USAGE
============================================================
    python app.py --events events.jsonl --config ledger.yaml
    python app.py --config ledger.yaml --reconcile-once
    LEDGER_DATABASE_URL=sqlite:///ledger.db python app.py --events events.jsonl

Each line of the events file is one raw chain event:
    {"contractAddress": "0x..", "eventName": "Deposited",
     "args": {"user": "0x..", "assets": "1000000000", "shares": "1000000000"},
     "txHash": "0x..", "logIndex": 0, "blockNumber": 1, "blockTimestamp": 1700000000}

============================================================
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from allocation_reconciler import (
    AllocationReconciler,
    JsonRpcClient,
    JsonRpcStrategyBalanceReader,
    JsonRpcVaultReader,
    RebalanceIntent,
)
from core.clock import ClockProtocol, SystemClock
from core.exceptions import LedgerException
from core.settings import LedgerSettings, load_settings
from core.user_registry import UserRegistry
from event_ingestion import (
    EventDispatcher,
    EventNormalizer,
    IngestionPipeline,
    OrderingGuard,
    PositionResyncer,
)
from points_ledger import PointsLedger
from position_ledger import PositionLedger
from query_facade import QueryFacade
from referral_graph import ReferralGraph
from storage import Database, LedgerRepository


logger = logging.getLogger("app")


# ============================================================
# LOGGING SETUP
# ============================================================

def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        stream=sys.stdout,
        force=True,
    )


# ============================================================
# RUNTIME WIRING
# ============================================================

@dataclass
class LedgerRuntime:
    """All ledger components sharing one UserRegistry and clock."""

    settings: LedgerSettings
    clock: ClockProtocol
    users: UserRegistry
    points: PointsLedger
    positions: PositionLedger
    referrals: ReferralGraph
    ordering: OrderingGuard
    normalizer: EventNormalizer
    pipeline: IngestionPipeline
    facade: QueryFacade


def build_runtime(settings: LedgerSettings, clock: Optional[ClockProtocol] = None) -> LedgerRuntime:
    """Construct empty ledgers from settings."""
    clock = clock or SystemClock()
    users = UserRegistry()
    points = PointsLedger(settings.points, clock)
    positions = PositionLedger(users, points, settings.positions, clock)
    referrals = ReferralGraph(users, points)
    ordering = OrderingGuard()
    normalizer = EventNormalizer(settings.contracts)
    pipeline = IngestionPipeline(normalizer, positions, referrals, ordering, clock)
    facade = QueryFacade(users, positions, points, referrals, clock)
    return LedgerRuntime(
        settings=settings,
        clock=clock,
        users=users,
        points=points,
        positions=positions,
        referrals=referrals,
        ordering=ordering,
        normalizer=normalizer,
        pipeline=pipeline,
        facade=facade,
    )


def rebuild_from_database(runtime: LedgerRuntime, database: Database) -> Dict[str, int]:
    with database.transaction_scope() as session:
        return LedgerRepository(session).rebuild(
            runtime.users, runtime.positions, runtime.points, runtime.referrals, runtime.ordering
        )


def save_to_database(runtime: LedgerRuntime, database: Database) -> Dict[str, int]:
    with database.transaction_scope() as session:
        return LedgerRepository(session).save_ledgers(
            runtime.users, runtime.positions, runtime.points, runtime.referrals, runtime.ordering
        )


# ============================================================
# EVENT REPLAY
# ============================================================

def read_events(path: Path) -> Iterator[Dict[str, Any]]:
    """
    Yield raw events from a JSONL file.

    Blank lines are skipped; undecodable lines are logged and dropped.
    """
    with open(path, "r") as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                logger.error(f"{path}:{line_number}: invalid JSON dropped: {e}")
                continue
            if not isinstance(data, dict):
                logger.error(f"{path}:{line_number}: event must be an object, dropped")
                continue
            yield data


async def replay_events(
    runtime: LedgerRuntime,
    raws,
    resyncer: Optional[PositionResyncer] = None,
) -> Dict[str, int]:
    """
    Push raw events through the dispatcher and wait for them.

    Returns:
        Outcome counts by status
    """
    dispatcher = EventDispatcher(
        runtime.pipeline,
        workers=runtime.settings.dispatcher_workers,
        resyncer=resyncer,
    )
    async with dispatcher:
        for raw in raws:
            await dispatcher.submit_raw(raw)
        await dispatcher.join()
    counts = dispatcher.counts()
    logger.info(f"Replay finished: {counts}")
    return counts


# ============================================================
# RECONCILIATION
# ============================================================

async def log_intent(intent: RebalanceIntent) -> None:
    """Keeper hand-off: emit the intent as one JSON line."""
    print(json.dumps(intent.to_dict()))


def build_reconciler(settings: LedgerSettings, client: JsonRpcClient) -> AllocationReconciler:
    reader = JsonRpcStrategyBalanceReader(
        client,
        {a.vault_address: a.strategy_contracts for a in settings.allocations},
    )
    return AllocationReconciler(
        settings.allocations,
        reader,
        settings.reconciler,
        on_intent=log_intent,
    )


# ============================================================
# CLI
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vault-ledger",
        description="Vault position, points and referral ledger",
    )
    parser.add_argument("--events", type=Path, help="JSONL file of raw chain events to replay")
    parser.add_argument("--config", type=Path, help="YAML settings file")
    parser.add_argument("--database-url", help="Override the database URL")
    parser.add_argument(
        "--reconcile-once",
        action="store_true",
        help="Run one reconciliation cycle for every configured vault",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Override the log level",
    )
    return parser


async def run_application(args: argparse.Namespace, settings: LedgerSettings) -> int:
    """
    Run one replay/reconcile pass.

    Returns:
        Exit code
    """
    runtime = build_runtime(settings)
    database = Database(settings.database_url)
    client = JsonRpcClient(settings.rpc_url, timeout=settings.rpc_timeout_seconds) if settings.rpc_url else None

    try:
        database.create_schema()
        loaded = rebuild_from_database(runtime, database)
        logger.info(f"Rebuilt ledger state: {loaded}")

        if args.events:
            resyncer = None
            if client is not None:
                resyncer = PositionResyncer(
                    JsonRpcVaultReader(client), runtime.positions, runtime.pipeline, runtime.clock
                )
            else:
                logger.warning("RPC_URL not set: out-of-order vault events will not be re-synced")
            await replay_events(runtime, read_events(args.events), resyncer)
            save_to_database(runtime, database)

            divergences = runtime.points.verify_balances()
            if divergences:
                logger.error(f"Points cache repaired for {len(divergences)} wallets")

        if args.reconcile_once:
            if client is None or not settings.allocations:
                logger.error("Reconciliation needs RPC_URL and at least one allocation")
                return 2
            results = await build_reconciler(settings, client).run_all()
            skipped = [r for r in results if r.skipped]
            if skipped:
                logger.warning(f"{len(skipped)} of {len(results)} vaults skipped this cycle")

        print(json.dumps(runtime.facade.stats().model_dump(mode="json")))
        return 0

    except LedgerException as e:
        logger.critical(f"Fatal ledger error: {e.message}", exc_info=True)
        return 1
    finally:
        if client is not None:
            await client.close()
        database.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = create_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
    except LedgerException as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    if args.database_url:
        settings.database_url = args.database_url
    if args.log_level:
        settings.log_level = args.log_level

    setup_logging(settings.log_level)
    logger.info(f"Starting vault ledger: {settings.to_dict()}")

    if args.events and not args.events.exists():
        logger.error(f"Events file not found: {args.events}")
        return 1

    try:
        return asyncio.run(run_application(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


# ============================================================
# ENTRY POINT
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
