from __future__ import annotations

import argparse
import asyncio
import json

from regionctl.persistence.db import SessionLocal
from regionctl.services.audit import SqlAuditLog


async def tail(limit: int) -> None:
    entries = await SqlAuditLog(SessionLocal).list_entries(limit=limit)
    for entry in reversed(entries):
        print(json.dumps(entry.to_dict(), sort_keys=True))


def main() -> None:
    parser = argparse.ArgumentParser(description="Print recent failover audit entries, oldest first.")
    parser.add_argument("--limit", type=int, default=20)
    args = parser.parse_args()
    asyncio.run(tail(args.limit))


if __name__ == "__main__":
    main()
