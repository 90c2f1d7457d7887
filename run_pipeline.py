"""
Main orchestration script for the Meta insights ingestion pipeline.

This script runs ingestion for each reporting level (ad, adset, campaign).
Each level is processed independently - failures in one level are logged
and don't stop the others. With --serve it starts the HTTP trigger instead.
"""

import argparse
import logging
from datetime import datetime
from pathlib import Path

from insights_ingestion.config import load_settings
from insights_ingestion.levels import LEVELS
from insights_ingestion.meta_ads import load_insights
from insights_ingestion.server import serve


def setup_logging():
    """Configure logging to file and console."""
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_dir = Path("logs")
    log_dir.mkdir(exist_ok=True)
    log_file = log_dir / f"pipeline_{timestamp}.log"

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler()
        ]
    )
    return logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Ingest Meta ad insights into storage.")
    parser.add_argument(
        "--level",
        action="append",
        choices=list(LEVELS),
        help="Reporting level to ingest (repeatable). Defaults to all levels.",
    )
    parser.add_argument("--date-preset", help="Graph API date_preset, e.g. last_7d.")
    parser.add_argument("--since", help="Custom window start (YYYY-MM-DD).")
    parser.add_argument("--until", help="Custom window end (YYYY-MM-DD).")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP trigger server.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    return parser.parse_args(argv)


def main(argv=None):
    """
    Main pipeline orchestration.

    Executes ingestion for every requested level.
    Each level is independent - failures are logged but don't stop the pipeline.
    """
    args = parse_args(argv)
    logger = setup_logging()

    if args.serve:
        serve(args.host, args.port)
        return [], []

    logger.info("="*60)
    logger.info("Starting Meta insights ingestion pipeline")
    logger.info("="*60)

    levels = args.level or list(LEVELS)
    succeeded = []
    failed_levels = []

    # Settings errors fail fast for every level, before any network call
    try:
        settings = load_settings()
    except Exception as e:
        logger.error(f"❌ Configuration error: {e}")
        return succeeded, levels

    for i, level in enumerate(levels, start=1):
        try:
            logger.info(f"\n[{i}/{len(levels)}] Ingesting {level} insights...")
            result = load_insights(
                level,
                settings=settings,
                date_preset=args.date_preset,
                since=args.since,
                until=args.until,
            )
            succeeded.append(level)
            logger.info(f"✅ {level}: {result.message} ({len(result.data)} rows)")
        except Exception as e:
            logger.error(f"❌ {level} ingestion failed: {e}", exc_info=True)
            failed_levels.append(level)

    logger.info("\n" + "="*60)
    logger.info("Pipeline execution completed")
    logger.info(f"Successfully loaded: {len(succeeded)} levels")
    if succeeded:
        logger.info(f"  - {', '.join(succeeded)}")
    if failed_levels:
        logger.warning(f"Failed: {len(failed_levels)} levels")
        logger.warning(f"  - {', '.join(failed_levels)}")
    logger.info("="*60)

    return succeeded, failed_levels


if __name__ == "__main__":
    main()
