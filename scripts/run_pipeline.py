"""
Script to run the catalog pipeline from the command line

Examples:
    python scripts/run_pipeline.py --file data/inbound/KM_PRODUCT_20251020.csv --company KM
    python scripts/run_pipeline.py --file data/inbound/KM_EVENT_20251020.csv --company KM --kind EVENT
    python scripts/run_pipeline.py --batch-id KM-PRODUCT-20251020093000-1a2b3c4d
    python scripts/run_pipeline.py --drain
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import engine
from core.exceptions import PipelineException
from core.logging import setup_logging
from models.base import DataKind
from ingestion.runner import PipelineRunner

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vendor CSV → product catalog pipeline")
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--file", help="CSV file to ingest and process")
    target.add_argument("--batch-id", help="Re-run an existing batch")
    target.add_argument("--drain", action="store_true", help="Process every unfinished batch")
    parser.add_argument("--company", help="Group company code (required with --file)")
    parser.add_argument(
        "--kind",
        choices=[kind.value for kind in DataKind],
        default=DataKind.PRODUCT.value,
        help="Data kind of --file"
    )
    parser.add_argument("--worker-id", help="Override WORKER_ID")
    return parser


async def run_pipeline(args) -> int:
    runner = PipelineRunner(worker_id=args.worker_id)

    try:
        if args.file:
            result = await runner.run_file(args.file, args.company, DataKind(args.kind))
            logger.info(f"Batch {result['batch_id']}: {result['status']} {result['counts']}")
        elif args.batch_id:
            result = await runner.run_batch(args.batch_id)
            logger.info(f"Batch {result['batch_id']}: {result['status']} {result['counts']}")
        else:
            processed = 0
            while True:
                result = await runner.run_next()
                if result is None:
                    break
                processed += 1
                logger.info(f"Batch {result['batch_id']}: {result['status']}")
            logger.info(f"Drained {processed} batches")
    except PipelineException as e:
        logger.error(f"Pipeline failed: {e}")
        return 1
    finally:
        await engine.dispose()

    return 0


if __name__ == "__main__":
    parser = build_parser()
    args = parser.parse_args()
    if args.file and not args.company:
        parser.error("--company is required with --file")

    setup_logging()
    sys.exit(asyncio.run(run_pipeline(args)))
