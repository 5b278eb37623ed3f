#!/usr/bin/env python3
"""
Sessionization ETL Orchestrator

Extracts a raw event batch, sessionizes it, stages the result for the
warehouse and loads it.

Usage:
    # Run full pipeline
    python run_pipeline.py --full

    # Run specific stages
    python run_pipeline.py --extract --sessionize
    python run_pipeline.py --stage --load --metrics

    # Override the session length from the config
    python run_pipeline.py --full --session-length 45

Pipeline Stages:
    1. Extract (fetch JSON-lines events from URL or file)
    2. Sessionize (partition by customer, split on inactivity gaps)
    3. Stage (write parquet and place it in the staging area)
    4. Load (copy staged files into the warehouse)
    5. Metrics (compute funnel metrics from the warehouse)
"""

import argparse
import logging
import os
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

import pandas as pd
import yaml

from sessionfunnel.data.events import fetch_events
from sessionfunnel.data.sessionization import TimeBasedSessionizer
from sessionfunnel.errors import NoDataError
from sessionfunnel.metrics.funnel import MetricsSnapshot
from sessionfunnel.storage.staging import stage_events
from sessionfunnel.storage.warehouse import EventWarehouse

logger = logging.getLogger(__name__)

# Environment variables that override config values
ENV_OVERRIDES = {
    "URL": ("source", "url", str),
    "SESSION_LENGTH": ("session", "session_length_minutes", int),
    "DATA_PATH": ("paths", "data_path", str),
    "STAGE_DIR": ("paths", "stage_dir", str),
    "WAREHOUSE_PATH": ("paths", "warehouse_path", str),
}


def setup_logging(log_file: str = "pipeline.log"):
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


class PipelineOrchestrator:
    """
    Orchestrates the sessionization ETL.

    Design Principles:
    - Each stage reads its input from disk, so stages can be re-run alone
    - Sessionization always runs over the full raw batch
    - Clear logging at each stage
    """

    def __init__(self, config_path: str = "configs/pipeline.yaml", session_length: Optional[int] = None):
        """
        Initialize pipeline orchestrator.

        Args:
            config_path: Path to pipeline configuration file
            session_length: Overrides the configured session length
        """
        self.config_path = config_path
        self.config = self._load_config()
        if session_length is not None:
            self.config['session']['session_length_minutes'] = session_length

        paths = self.config['paths']
        self.data_dir = Path(paths['data_dir'])
        self.raw_dir = self.data_dir / "raw"
        self.processed_dir = self.data_dir / "processed"
        self.data_path = Path(paths['data_path'])
        self.stage_dir = Path(paths['stage_dir'])
        self.warehouse_path = Path(paths['warehouse_path'])

        self._create_directories()

        logger.info("=" * 80)
        logger.info("🚀 Sessionization ETL Pipeline")
        logger.info("=" * 80)
        logger.info(f"Configuration: {config_path}")
        logger.info(f"Start time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    def _load_config(self) -> Dict:
        """Load configuration from YAML file, then apply environment overrides."""
        with open(self.config_path, 'r') as f:
            config = yaml.safe_load(f)

        for env_var, (section, key, cast) in ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if value is not None:
                config.setdefault(section, {})[key] = cast(value)
                logger.info(f"   {env_var} overrides {section}.{key}")

        logger.info(f"✅ Loaded configuration from {self.config_path}")
        return config

    def _create_directories(self):
        """Create necessary directories if they don't exist."""
        for directory in [self.raw_dir, self.processed_dir, self.stage_dir]:
            directory.mkdir(parents=True, exist_ok=True)

    def _warehouse(self) -> EventWarehouse:
        return EventWarehouse(self.warehouse_path, self.stage_dir).connect().prepare_db()

    def stage_1_extract(self) -> Path:
        """
        Stage 1: Fetch the raw event batch.

        Returns:
            Path to the raw events parquet
        """
        logger.info("\n" + "=" * 80)
        logger.info("📥 STAGE 1: Extract")
        logger.info("=" * 80)

        start_time = time.time()

        source = self.config['source']
        events_df = fetch_events(source['url'], timeout=source.get('timeout_seconds', 30))

        raw_path = self.raw_dir / "events.parquet"
        events_df.to_parquet(raw_path, index=False, compression='snappy')
        logger.info(f"💾 Saved {len(events_df)} raw events to {raw_path}")

        elapsed = time.time() - start_time
        logger.info(f"\n✅ Stage 1 completed in {elapsed:.2f} seconds")

        return raw_path

    def stage_2_sessionize(self, raw_path: Optional[Path] = None) -> Path:
        """
        Stage 2: Sessionize raw events.

        Args:
            raw_path: Path to raw events (if None, loads from default)

        Returns:
            Path to sessionized events
        """
        logger.info("\n" + "=" * 80)
        logger.info("🔗 STAGE 2: Sessionization")
        logger.info("=" * 80)

        start_time = time.time()

        if raw_path is None:
            raw_path = self.raw_dir / "events.parquet"

        logger.info(f"📂 Loading raw events from {raw_path}")
        events_df = pd.read_parquet(raw_path)

        session_config = self.config['session']
        sessionizer = TimeBasedSessionizer(
            session_length=session_config['session_length_minutes'],
            n_workers=session_config.get('workers', 1)
        )
        sessionized_df = sessionizer.sessionize(
            events_df, strict_timestamps=session_config.get('strict_timestamps', False)
        )

        sessionized_path = self.processed_dir / "sessionized_events.parquet"
        sessionized_df.to_parquet(sessionized_path, index=False, compression='snappy')
        logger.info(f"💾 Saved sessionized events to {sessionized_path}")

        elapsed = time.time() - start_time
        logger.info(f"\n✅ Stage 2 completed in {elapsed:.2f} seconds")

        return sessionized_path

    def stage_3_stage(self, sessionized_path: Optional[Path] = None) -> Path:
        """
        Stage 3: Write the sessionized table to the staging area.

        Returns:
            Path of the staged file
        """
        logger.info("\n" + "=" * 80)
        logger.info("📤 STAGE 3: Staging")
        logger.info("=" * 80)

        start_time = time.time()

        if sessionized_path is None:
            sessionized_path = self.processed_dir / "sessionized_events.parquet"

        sessionized_df = pd.read_parquet(sessionized_path)
        staged_path = stage_events(sessionized_df, self.data_path, self.stage_dir)

        elapsed = time.time() - start_time
        logger.info(f"\n✅ Stage 3 completed in {elapsed:.2f} seconds")

        return staged_path

    def stage_4_load(self) -> int:
        """
        Stage 4: Copy staged files into the warehouse.

        Returns:
            Number of rows copied
        """
        logger.info("\n" + "=" * 80)
        logger.info("🗄️  STAGE 4: Load")
        logger.info("=" * 80)

        start_time = time.time()

        warehouse_config = self.config.get('warehouse', {})
        warehouse = self._warehouse()
        try:
            copied = warehouse.copy_stage_to_table(
                poll_interval=warehouse_config.get('poll_interval_seconds', 5),
                max_attempts=warehouse_config.get('max_attempts')
            )
            logger.info(f"   Warehouse now holds {warehouse.row_count():,} events")
        finally:
            warehouse.close()

        elapsed = time.time() - start_time
        logger.info(f"\n✅ Stage 4 completed in {elapsed:.2f} seconds")

        return copied

    def stage_5_metrics(self) -> Optional[MetricsSnapshot]:
        """
        Stage 5: Compute funnel metrics from the warehouse.

        Returns:
            Metrics snapshot, or None if there is not enough data
        """
        logger.info("\n" + "=" * 80)
        logger.info("📊 STAGE 5: Funnel Metrics")
        logger.info("=" * 80)

        warehouse = self._warehouse()
        try:
            snapshot = warehouse.publish_metrics()
        except NoDataError as e:
            logger.warning(f"⚠️  No metrics available: {e}")
            return None
        finally:
            warehouse.close()

        logger.info(f"   Median visits before order: {snapshot.median_visits_before_order:.2f}")
        logger.info(
            f"   Median session duration before order: "
            f"{snapshot.median_session_duration_minutes_before_order:.2f} minutes"
        )
        return snapshot

    def run_full_pipeline(self) -> Optional[MetricsSnapshot]:
        """Run the complete extract → sessionize → stage → load → metrics pipeline."""
        pipeline_start = time.time()

        try:
            raw_path = self.stage_1_extract()
            sessionized_path = self.stage_2_sessionize(raw_path)
            self.stage_3_stage(sessionized_path)
            self.stage_4_load()
            snapshot = self.stage_5_metrics()

            total_elapsed = time.time() - pipeline_start
            logger.info("\n" + "=" * 80)
            logger.info("🎉 PIPELINE COMPLETED SUCCESSFULLY!")
            logger.info("=" * 80)
            logger.info(f"Total time: {total_elapsed:.2f} seconds")
            logger.info(f"End time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
            logger.info("=" * 80)

            return snapshot

        except Exception as e:
            logger.error(f"\n❌ Pipeline failed with error: {str(e)}", exc_info=True)
            raise


def main():
    """Main entry point for pipeline orchestration."""
    parser = argparse.ArgumentParser(
        description='Sessionization ETL Orchestrator',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run full pipeline
  python run_pipeline.py --full

  # Run specific stages
  python run_pipeline.py --extract --sessionize
  python run_pipeline.py --stage --load

  # Use custom config
  python run_pipeline.py --config configs/custom.yaml --full
        """
    )

    parser.add_argument(
        '--config',
        type=str,
        default='configs/pipeline.yaml',
        help='Path to configuration file (default: configs/pipeline.yaml)'
    )
    parser.add_argument(
        '--session-length',
        type=int,
        default=None,
        help='Inactivity threshold in minutes (overrides config)'
    )

    # Pipeline stages
    parser.add_argument('--full', action='store_true', help='Run full pipeline')
    parser.add_argument('--extract', action='store_true', help='Run extract stage')
    parser.add_argument('--sessionize', action='store_true', help='Run sessionization stage')
    parser.add_argument('--stage', action='store_true', help='Run staging stage')
    parser.add_argument('--load', action='store_true', help='Run warehouse load stage')
    parser.add_argument('--metrics', action='store_true', help='Run funnel metrics stage')

    args = parser.parse_args()

    setup_logging()
    orchestrator = PipelineOrchestrator(config_path=args.config, session_length=args.session_length)

    if args.full:
        orchestrator.run_full_pipeline()
    else:
        if args.extract:
            orchestrator.stage_1_extract()

        if args.sessionize:
            orchestrator.stage_2_sessionize()

        if args.stage:
            orchestrator.stage_3_stage()

        if args.load:
            orchestrator.stage_4_load()

        if args.metrics:
            orchestrator.stage_5_metrics()

        # If no stages specified, show help
        if not any([args.extract, args.sessionize, args.stage, args.load, args.metrics]):
            parser.print_help()
            sys.exit(1)


if __name__ == "__main__":
    main()
