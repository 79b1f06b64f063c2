"""CLI tool for admin operations and cron-driven monitor runs.

Usage:
    python -m flipit.cli init-db
    python -m flipit.cli recover
    python -m flipit.cli run <monitor>
    python -m flipit.cli run-all
"""

import asyncio
import json
import sys

from flipit.database import create_db_and_tables
from flipit.utils.logging import setup_logging

COMMANDS = "init-db, recover, run <monitor>, run-all"


async def _run(names: list[str] | None) -> list[dict]:
    from flipit.engine.scheduler import run_all, run_monitor
    from flipit.services.execution_gateway import get_gateway
    from flipit.services.notifier import get_notifier
    from flipit.services.price_resolver import get_resolver

    try:
        if names is None:
            summaries = await run_all()
        else:
            summaries = [await run_monitor(name) for name in names]
        # Let fire-and-forget notifications land before the process exits
        await get_notifier().flush()
    finally:
        await get_resolver().aclose()
        await get_gateway().aclose()
    return [s.to_dict() for s in summaries]


def run(name: str):
    from flipit.engine.scheduler import MONITORS

    if name not in MONITORS:
        print(f"Unknown monitor: {name}")
        print(f"Monitors: {', '.join(MONITORS)}")
        sys.exit(1)
    create_db_and_tables()
    results = asyncio.run(_run([name]))
    print(json.dumps(results[0], indent=2))
    if results[0]["error"]:
        sys.exit(2)


def run_all():
    create_db_and_tables()
    results = asyncio.run(_run(None))
    print(json.dumps(results, indent=2))
    if any(r["error"] for r in results):
        sys.exit(2)


def recover():
    from flipit.engine.recovery import recover_on_startup

    create_db_and_tables()
    result = recover_on_startup()
    print(json.dumps(result, indent=2))


def main():
    if len(sys.argv) < 2:
        print("Usage: python -m flipit.cli <command>")
        print(f"Commands: {COMMANDS}")
        sys.exit(1)

    setup_logging()
    command = sys.argv[1]
    if command == "init-db":
        create_db_and_tables()
        print("Database ready.")
    elif command == "recover":
        recover()
    elif command == "run":
        if len(sys.argv) < 3:
            print("Usage: python -m flipit.cli run <monitor>")
            sys.exit(1)
        run(sys.argv[2])
    elif command == "run-all":
        run_all()
    else:
        print(f"Unknown command: {command}")
        sys.exit(1)


if __name__ == "__main__":
    main()
