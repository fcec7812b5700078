#!/usr/bin/env python3
"""CLI script to run one CRM sync outside the API server.

Usage:
    uv run python scripts/run_crm_sync.py
    uv run python scripts/run_crm_sync.py --direction from_external --full
    uv run python scripts/run_crm_sync.py --check

Reads the Vtiger connection and store settings from the environment or the
.env file. Exits non-zero if the connection check or the candidate sync fails.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.recruitops
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def run(direction: str, full: bool, check_only: bool) -> int:
    """Run a single sync (or just a connection check). Returns the exit code."""
    from src.recruitops.api.middleware.logging import configure_structlog
    from src.recruitops.config import StoreBackend, get_settings
    from src.recruitops.core.database import close_db, init_db
    from src.recruitops.crm.connector import CRMConnector
    from src.recruitops.crm.errors import ConfigurationError
    from src.recruitops.sync.factory import build_orchestrator, build_store

    settings = get_settings()
    configure_structlog()

    try:
        connector = CRMConnector.from_settings(settings)
    except ConfigurationError as exc:
        print(f"CRM not configured: {exc}", file=sys.stderr)
        return 2

    if settings.STORE_BACKEND == StoreBackend.database:
        await init_db()

    orchestrator = build_orchestrator(settings, connector, build_store(settings))
    try:
        if not await connector.verify_connection():
            print("Connection check failed", file=sys.stderr)
            return 1
        print(f"Connected to {settings.VTIGER_SERVER_URL} ({settings.VTIGER_AUTH_SCHEME.value})")
        if check_only:
            return 0

        try:
            await orchestrator.sync_all(direction, full=full)
        except Exception as exc:
            print(f"Sync failed: {exc}", file=sys.stderr)
            return 1

        snapshot = orchestrator.status()
        print(f"{snapshot.message}: {snapshot.processed_candidates} candidates")
        for entry in orchestrator.history():
            print(f"  [{entry.status.value}] {entry.entity_type.value}: {entry.message}")
        return 0
    finally:
        await orchestrator.shutdown()
        if settings.STORE_BACKEND == StoreBackend.database:
            await close_db()


def main() -> None:
    parser = argparse.ArgumentParser(description="Run one CRM sync")
    parser.add_argument(
        "--direction",
        choices=["to_external", "from_external", "bidirectional"],
        default="bidirectional",
        help="Sync direction relative to the CRM",
    )
    parser.add_argument("--full", action="store_true", help="Ignore the last sync time")
    parser.add_argument("--check", action="store_true", help="Only verify the CRM connection")
    args = parser.parse_args()

    sys.exit(asyncio.run(run(args.direction, args.full, args.check)))


if __name__ == "__main__":
    main()
