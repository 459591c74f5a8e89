"""
Demo data writer for FeedMux.

Inserts a timestamp document into each target collection on a fixed
interval, so subscribers have a steady stream of changes to watch.

Usage:
    feedmux-seed
    feedmux-seed --collection orders --interval 5 --count 10
    feedmux-seed --uri mongodb://localhost:27017 --init-replica-set

Each document looks like {"timestamp": <epoch milliseconds>}.

Invariants:
    - Collections are written in the order given, once per tick
    - A failed insert is logged and does not stop the loop
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from typing import Any, Dict, List, Optional, Sequence

from ..config import MongoConfig
from ..store.base import StoreError

logger = logging.getLogger(__name__)

DEFAULT_COLLECTIONS = ("result-cache-0", "result-cache-1")
DEFAULT_INTERVAL_SECONDS = 20.0


class SeedWriter:
    """Periodically inserts timestamp documents.

    Attributes:
        store: Connected store with an insert_one(collection, document) method
        collections: Collections written on every tick
        interval_seconds: Pause between ticks

    Example:
        >>> writer = SeedWriter(store, ["result-cache-0"], interval_seconds=1)
        >>> await writer.run(count=3)
    """

    def __init__(
        self,
        store: Any,
        collections: Sequence[str] = DEFAULT_COLLECTIONS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
    ) -> None:
        if not collections:
            raise ValueError("At least one collection is required")
        if interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")
        self.store = store
        self.collections = list(collections)
        self.interval_seconds = interval_seconds
        self.inserted = 0
        self.failed = 0

    async def tick(self) -> List[Dict[str, Any]]:
        """Insert one document into every collection.

        Returns:
            The documents inserted successfully
        """
        written = []
        for collection in self.collections:
            doc = {"timestamp": int(time.time() * 1000)}
            try:
                await self.store.insert_one(collection, doc)
            except StoreError as e:
                self.failed += 1
                logger.error(f"Insert failed: {e}", extra={"collection": collection})
                continue
            self.inserted += 1
            written.append(doc)
            logger.info("Inserted", extra={"collection": collection, "timestamp": doc["timestamp"]})
        return written

    async def run(self, count: Optional[int] = None) -> None:
        """Tick forever, or count times."""
        ticks = 0
        while count is None or ticks < count:
            await self.tick()
            ticks += 1
            if count is None or ticks < count:
                await asyncio.sleep(self.interval_seconds)


async def _seed(args: argparse.Namespace) -> int:
    from ..store.mongo import MongoDocumentStore

    config = MongoConfig(
        uri=args.uri,
        database=args.database,
        init_replica_set=args.init_replica_set,
    )
    store = MongoDocumentStore(config)
    try:
        await store.connect()
    except StoreError as e:
        print(f"Cannot connect: {e}", file=sys.stderr)
        return 1

    writer = SeedWriter(store, args.collection or DEFAULT_COLLECTIONS, args.interval)
    try:
        await writer.run(args.count)
    finally:
        await store.close()

    print(f"Inserted {writer.inserted} document(s), {writer.failed} failure(s)")
    return 0 if writer.failed == 0 else 1


def main() -> None:
    """CLI entry point for the seed tool."""
    parser = argparse.ArgumentParser(description="Write demo change events for FeedMux")
    parser.add_argument("--uri", default="mongodb://localhost:27017", help="MongoDB URI")
    parser.add_argument("--database", default="test", help="Database name")
    parser.add_argument(
        "--collection",
        "-c",
        action="append",
        help="Collection to write (repeatable; default: result-cache-0 and result-cache-1)",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=DEFAULT_INTERVAL_SECONDS,
        help="Seconds between inserts",
    )
    parser.add_argument("--count", type=int, help="Stop after this many ticks")
    parser.add_argument(
        "--init-replica-set",
        action="store_true",
        help="Run replSetInitiate before writing (fresh single-node server)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    args = parser.parse_args()

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )

    try:
        sys.exit(asyncio.run(_seed(args)))
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    main()
