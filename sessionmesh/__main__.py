#!/usr/bin/env python3
"""
Session Runtime Demo

Runs queries and a retried read-write transaction against the
in-process transport.

Usage:
    python -m sessionmesh
    python -m sessionmesh --queries 20 --abort-once

    # Or with custom config
    SESSIONMESH_POOL_MIN=5 SESSIONMESH_LOG_LEVEL=DEBUG python -m sessionmesh
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from sessionmesh.client.database import Database
from sessionmesh.client.transaction import Transaction
from sessionmesh.core.config import SessionMeshConfig
from sessionmesh.observability.logging import LogLevel, setup_logging
from sessionmesh.transport.memory import (
    InMemoryTransport,
    StatementResult,
    create_simple_result_set,
)

DATABASE = "projects/demo/instances/local/databases/demo"
SELECT_SQL = "SELECT NUM, NAME FROM NUMBERS"
UPDATE_SQL = "UPDATE NUMBERS SET NAME = UPPER(NAME) WHERE TRUE"


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="sessionmesh", description="Session runtime demo against the in-process transport")
    parser.add_argument("--queries", type=int, default=10, help="Single-use queries to run")
    parser.add_argument("--abort-once", action="store_true", help="Abort the first transaction attempt")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    return parser.parse_args(argv)


async def demo(args: argparse.Namespace, config: SessionMeshConfig) -> None:
    transport = InMemoryTransport()
    transport.put_statement_result(SELECT_SQL, create_simple_result_set())
    transport.put_statement_result(UPDATE_SQL, StatementResult.update_count(3))

    async with Database(transport, DATABASE, config) as db:
        for _ in range(args.queries):
            rows = await db.run(SELECT_SQL)
        print(f"✓ {args.queries} queries, last returned {len(rows)} rows:")
        for row in rows:
            print(f"    {row.to_dict()}")

        aborted = False

        async def body(txn: Transaction) -> int:
            nonlocal aborted
            if args.abort_once and not aborted:
                aborted = True
                assert txn.id is not None
                transport.abort_transaction(txn.id, txn.handle.id)
            count = await txn.run_update(UPDATE_SQL)
            txn.insert("NUMBERS", ["NUM", "NAME"], [[4, "Four"]])
            return count

        updated = await db.run_transaction(body, label="demo-update")
        run = db.runner.last_run
        assert run is not None
        print(f"✓ Transaction updated {updated} rows in {run.attempt_count} attempt(s)")
        print(f"✓ Pool size {db.pool.size}, server sessions {len(transport.session_names)}")


def main(argv: list[str]) -> int:
    args = parse_args(argv)

    config_result = SessionMeshConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}")
        return 1
    config = config_result.unwrap()

    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}")
        return 1

    setup_logging(
        LogLevel.from_name(config.observability.log_level),
        json_output=args.json_logs,
    )
    asyncio.run(demo(args, config))
    return 0


def cli() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    cli()
