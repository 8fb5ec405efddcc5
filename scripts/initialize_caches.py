#!/usr/bin/env python3
"""
Cache initialization utility.

Loads optional seed documents into the durable store, rebuilds every
read-through aggregate from it, and writes the resulting cache tree to a JSON
file for inspection.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Load environment variables from .env file first
import dotenv
dotenv.load_dotenv()

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from engage.core.config import DB_PATH, ensure_data_directories, validate_config
from engage.core.services import build_services
from engage.core.stores import StoreError


async def seed(services, documents: dict) -> int:
    """Write {collection: [doc, ...]} into the durable store. Returns the document count."""
    count = 0
    for collection, docs in documents.items():
        for doc in docs:
            doc = dict(doc)
            doc_id = doc.pop("id", None)
            if doc_id:
                await services.durable.set(collection, doc_id, doc)
            else:
                await services.durable.add(collection, doc)
            count += 1
    return count


async def run(args) -> dict:
    services = build_services(db_path=args.db, persistent=False)
    try:
        seeded = 0
        if args.seed:
            with open(args.seed, "r", encoding="utf-8") as f:
                seeded = await seed(services, json.load(f))
        counts = await services.projector.rebuild_all()
        counts["seeded"] = seeded

        if args.output:
            Path(args.output).parent.mkdir(parents=True, exist_ok=True)
            with open(args.output, "w", encoding="utf-8") as f:
                json.dump(services.read_through.peek("/"), f, indent=2, default=str)
        return counts
    finally:
        services.close()


def main():
    parser = argparse.ArgumentParser(description="Rebuild read-through cache aggregates")
    parser.add_argument("--db", default=DB_PATH, help="SQLite database path")
    parser.add_argument("--seed", help="JSON file of {collection: [documents]} to load first")
    parser.add_argument("--output", help="Write the rebuilt cache tree to this JSON file")
    args = parser.parse_args()

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"WARNING: {issue}")

    ensure_data_directories()
    print("Starting cache initialization...")

    try:
        counts = asyncio.run(run(args))
    except (OSError, json.JSONDecodeError) as e:
        print(f"ERROR: Could not read seed file: {e}")
        return 1
    except StoreError as e:
        print(f"ERROR: Store operation failed: {e}")
        return 1

    print(f"✓ Projected {counts['submissions']} submissions for {counts['users']} users")
    if counts["seeded"]:
        print(f"✓ Seeded {counts['seeded']} documents")
    if args.output:
        print(f"✓ Cache tree written to {args.output}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
