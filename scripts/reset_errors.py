#!/usr/bin/env python3
"""
Error Reset Utility
Returns staging narratives in the error state to pending so the next batch
run reprocesses them.
"""

import argparse
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.core.config import BatchConfig
from src.core.schema import ProcessingState
from src.core.staging import StagingRepository


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reset errored case narratives to pending")
    parser.add_argument("case_ids", nargs="*", help="Case ids to reset")
    parser.add_argument("--all", action="store_true", help="Reset every errored record")
    parser.add_argument("--list", action="store_true", help="List errored records and exit")
    args = parser.parse_args(argv)

    staging = StagingRepository(BatchConfig.from_env().db_path)

    if args.list:
        for record in staging.list_by_state(ProcessingState.ERROR, limit=1000):
            print(f"{record.case_id}\t{record.catalog_item_id}\t{record.error_message}")
        return

    if not args.case_ids and not args.all:
        print("ERROR: Pass case ids or --all")
        sys.exit(1)

    reset = staging.reset_errors(None if args.all else args.case_ids)
    print(f"✓ Reset {reset} record(s) to pending")


if __name__ == "__main__":
    main()
