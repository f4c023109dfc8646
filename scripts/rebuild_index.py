#!/usr/bin/env python3
"""
Index Rebuild Utility
Drops and rebuilds the ANN index over all knowledge vectors and saves it for
the API process to load. Run during low-write windows.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import StoreConfig, get_embedding_client
from src.core.errors import CaseRecallError
from src.vector.sqlite_store import SqliteVectorStore


def main(argv=None):
    """Rebuild and persist the vector index."""
    config = StoreConfig.from_env()

    parser = argparse.ArgumentParser(description="Rebuild the knowledge vector ANN index")
    parser.add_argument("--target-accuracy", type=float, default=config.target_accuracy,
                        help="Target recall percentage; 100 builds an exact index")
    parser.add_argument("--metric", default="cosine", help="Distance metric (only cosine is supported)")
    parser.add_argument("--output", default=config.index_path, help="Index file path")
    parser.add_argument("--verify-query", default=None,
                        help="Optional query text embedded and searched after the rebuild")
    args = parser.parse_args(argv)

    store = SqliteVectorStore(config)
    print("Starting vector index rebuild...")

    vector_count = store.count()
    print(f"Found {vector_count} knowledge vectors for model {config.model_name}")

    try:
        store.build_index(args.metric, args.target_accuracy)
        store.save_index(args.output)
    except CaseRecallError as e:
        print(f"ERROR: Index rebuild failed: {e.message}")
        sys.exit(1)

    status = store.index_status()
    print(f"✓ Built {status['type']} index with {status['vectors']} vectors (revision {status['revision']})")
    print(f"✓ Saved index to {args.output}")

    if args.verify_query and vector_count:
        try:
            from src.core.normalizer import normalize_text
            client = get_embedding_client()
            results = store.search(client.embed(normalize_text(args.verify_query)), k=min(3, vector_count))
            print(f"✓ Verification search returned {len(results)} results")
        except CaseRecallError as e:
            print(f"WARNING: Verification search failed: {e.message}")

    print("Index rebuild complete!")


if __name__ == "__main__":
    main()
