#!/usr/bin/env python3
"""
Backlog Processing Utility
Drains pending staging narratives into knowledge vectors. Safe to run from
several processes at once; each batch claims its own records.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.batch_processor import BatchProcessor, drain_backlog
from src.core.config import BatchConfig, StoreConfig, get_embedding_client, get_vector_store, validate_config
from src.core.errors import OperationTimeoutError, ValidationError
from src.core.staging import StagingRepository


def build_processor(batch_config: BatchConfig = None) -> BatchProcessor:
    batch_config = batch_config or BatchConfig.from_env()
    return BatchProcessor(
        StagingRepository(batch_config.db_path),
        get_vector_store(StoreConfig.from_env()),
        get_embedding_client(),
        batch_config,
    )


def main(argv=None):
    """Process pending narratives until the backlog is empty."""
    batch_config = BatchConfig.from_env()

    parser = argparse.ArgumentParser(description="Embed pending case narratives")
    parser.add_argument("--batch-size", type=int, default=batch_config.batch_size,
                        help=f"Records claimed per batch (default: {batch_config.batch_size})")
    parser.add_argument("--workers", type=int, default=1, help="Concurrent worker threads")
    parser.add_argument("--max-batches", type=int, default=None, help="Stop after this many batches")
    parser.add_argument("--batch-timeout", type=float, default=None, help="Deadline per batch in seconds")
    args = parser.parse_args(argv)

    issues = validate_config()
    if issues:
        for issue in issues:
            print(f"ERROR: {issue}")
        sys.exit(1)

    processor = build_processor(batch_config)
    print(f"Starting backlog processing ({processor.staging.count_pending()} pending)...")

    try:
        totals = drain_backlog(processor, args.batch_size, workers=args.workers,
                               max_batches=args.max_batches, timeout=args.batch_timeout)
    except ValidationError as e:
        print(f"ERROR: {e.message}")
        sys.exit(1)
    except OperationTimeoutError as e:
        print(f"WARNING: {e.message}")
        sys.exit(2)

    print(f"✓ Processed {totals.processed}, errored {totals.errored}, remaining pending {totals.remaining_pending}")
    if totals.errored:
        print("Errored records are not retried automatically; use reset_errors.py after review.")
    if totals.lost:
        print(f"Skipped {totals.lost} record(s) claimed by another worker after a lease expired.")


if __name__ == "__main__":
    main()
