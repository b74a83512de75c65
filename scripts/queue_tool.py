#!/usr/bin/env python3
"""
Inspect or reset the offline sync queue stored in the POS SQLite file.

Run: py scripts\\queue_tool.py --db pos.db --list
     py scripts\\queue_tool.py --db pos.db --evicted
     py scripts\\queue_tool.py --db pos.db --clear-evicted
"""
import argparse
import json
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from kv_storage import SqliteKVStorage  # noqa: E402
from sync_engine import EVICTED_KEY  # noqa: E402
from sync_queue import PendingQueue  # noqa: E402


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="Offline sync queue tool")
    ap.add_argument("--db", default=os.environ.get("POS_DB_PATH", "pos.db"))
    ap.add_argument("--list", action="store_true", help="Print pending operations in replay order")
    ap.add_argument("--evicted", action="store_true", help="Print operations dropped by the sync engine")
    ap.add_argument("--clear", action="store_true", help="Drop every pending operation (data loss)")
    ap.add_argument("--clear-evicted", action="store_true", help="Empty the evicted operations log")
    args = ap.parse_args(argv)

    storage = SqliteKVStorage(args.db)
    queue = PendingQueue(storage)

    if args.list:
        for op in queue.operations():
            print(f"{op.enqueued_at}  {op.kind.value:<18} attempts={op.attempts}  {op.id}")
            if op.last_error:
                print(f"    last error: {op.last_error}")
        print(f"{queue.length()} pending")

    if args.evicted:
        raw = storage.get(EVICTED_KEY)
        for rec in json.loads(raw.decode("utf-8")) if raw else []:
            print(f"{rec.get('evicted_at')}  {rec.get('kind'):<18} {rec.get('reason')}  {rec.get('error')}")

    if args.clear:
        n = queue.length()
        queue.clear()
        print(f"Cleared {n} pending operations")

    if args.clear_evicted:
        storage.remove(EVICTED_KEY)
        print("Evicted operations log cleared")

    storage.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
