# =============================================================================
# TravelWatch - Fraud Detector Service
# =============================================================================
"""
The service that runs the windowed join engine against a live feed.

Architecture:
    [Kafka: transactions] -> [PartitionedRunner: N x (normalize -> join -> emit)]
                                                    |
                                  [Account lookup (Redis)] -> [Kafka: fraud_candidates]

Each partition owns the window buffer for the accounts hashed to it.
Candidates are keyed by ``first_id:second_id`` so downstream consumers can
deduplicate redeliveries.

Usage:
    # Run the detector service
    python -m travelwatch.processor.detector

    # Replay a JSON-lines file instead of Kafka, candidates go to stdout
    python -m travelwatch.processor.detector --input-file events.jsonl --no-dashboard
"""

from __future__ import annotations

import argparse
import json
import signal
import sys
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from confluent_kafka import Consumer, KafkaError
from loguru import logger
from pydantic import ValidationError
from rich.console import Console
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from travelwatch.config import get_settings
from travelwatch.config.settings import JoinSettings
from travelwatch.processor.account_lookup import AccountLookup, RedisAccountLookup
from travelwatch.processor.emitter import (
    CandidateSink,
    FraudCandidateEmitter,
    JsonLinesCandidateSink,
    KafkaCandidateSink,
)
from travelwatch.processor.partitions import PartitionedRunner
from travelwatch.processor.pipeline import FraudPipeline, build_pipeline


def _now_ms() -> int:
    return int(time.time() * 1000)


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class DetectorStats:
    """Transport-level statistics for the detector service."""

    messages_consumed: int = 0
    invalid_messages: int = 0
    transport_errors: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()


# =============================================================================
# Fraud Detector Service
# =============================================================================

class FraudDetectorService:
    """
    Consumes transactions, runs the partitioned join and publishes candidates.

    Example:
        detector = FraudDetectorService()
        detector.start()  # Runs until interrupted
    """

    def __init__(
        self,
        kafka_servers: str | None = None,
        topic_in: str | None = None,
        topic_out: str | None = None,
        consumer_group: str | None = None,
        join: JoinSettings | None = None,
        sink: CandidateSink | None = None,
        lookup: AccountLookup | None = None,
    ) -> None:
        """
        Initialize the fraud detector service.

        Args:
            kafka_servers: Kafka bootstrap servers
            topic_in: Topic to consume transactions from
            topic_out: Topic to publish fraud candidates to
            consumer_group: Kafka consumer group ID
            join: Window parameters (default: from config)
            sink: Output sink (default: Kafka producer on ``topic_out``)
            lookup: Account lookup (default: from config, may be disabled)
        """
        self.settings = get_settings()

        # Kafka configuration
        self.kafka_servers = kafka_servers or self.settings.kafka.bootstrap_servers
        self.topic_in = topic_in or self.settings.kafka.topic_transactions
        self.topic_out = topic_out or self.settings.kafka.topic_candidates
        self.consumer_group = consumer_group or self.settings.kafka.consumer_group

        self.join = join or self.settings.join

        # Statistics
        self.stats = DetectorStats()

        # Control flags
        self._running = False
        self._consumer: Consumer | None = None
        self._sink = sink
        self._lookup = lookup
        self._lookup_executor: ThreadPoolExecutor | None = None
        self._runner: PartitionedRunner | None = None

        # Console for rich output
        self.console = Console(stderr=True)

        logger.info(
            f"FraudDetectorService initialized: window={self.join.window_seconds}s, "
            f"retention={self.join.retention_seconds}s, partitions={self.join.partitions}"
        )

    @property
    def runner(self) -> PartitionedRunner | None:
        return self._runner

    # =========================================================================
    # Connection Management
    # =========================================================================

    def _init_kafka_consumer(self) -> None:
        """Initialize Kafka consumer."""
        config = {
            "bootstrap.servers": self.kafka_servers,
            "group.id": self.consumer_group,
            "auto.offset.reset": "latest",
            "enable.auto.commit": True,
            "auto.commit.interval.ms": 5000,
            "session.timeout.ms": 30000,
            "max.poll.interval.ms": 300000,
        }

        self._consumer = Consumer(config)
        self._consumer.subscribe([self.topic_in])
        logger.info(f"Kafka consumer subscribed to: {self.topic_in}")

    def _init_sink(self) -> None:
        """Initialize the Kafka producer sink unless one was injected."""
        if self._sink is None:
            self._sink = KafkaCandidateSink(
                bootstrap_servers=self.kafka_servers,
                topic=self.topic_out,
            )

    def _init_lookup(self) -> None:
        """Initialize the account lookup when enabled."""
        if self._lookup is None and self.settings.lookup.enabled:
            if self.settings.lookup.backend != "redis":
                logger.warning("In-memory account lookup must be injected, lookup disabled")
                return
            try:
                self._lookup = RedisAccountLookup(socket_timeout=self.settings.lookup.timeout_seconds)
            except Exception as e:
                logger.error(f"Failed to set up account lookup: {e}")
                logger.warning("Candidates will be published without account contact!")
                self._lookup = None

        if self._lookup is not None:
            self._lookup_executor = ThreadPoolExecutor(
                max_workers=self.join.partitions,
                thread_name_prefix="account-lookup",
            )

    def _build_pipeline(self, partition: int) -> FraudPipeline:
        emitter = FraudCandidateEmitter(
            sink=self._sink,
            lookup=self._lookup,
            lookup_timeout=self.settings.lookup.timeout_seconds,
            executor=self._lookup_executor,
        )
        return build_pipeline(self.join, emitter)

    def _init_runner(self) -> None:
        """Start one worker per partition."""
        self._runner = PartitionedRunner(
            num_partitions=self.join.partitions,
            pipeline_factory=self._build_pipeline,
        )
        self._runner.start()

    def _close_connections(self) -> None:
        """Close all connections gracefully."""
        if self._runner:
            self._runner.shutdown()

        if self._consumer:
            self._consumer.close()
            self._consumer = None

        if self._sink:
            self._sink.close()

        if self._lookup_executor:
            self._lookup_executor.shutdown(wait=False, cancel_futures=True)
            self._lookup_executor = None

        if self._lookup:
            self._lookup.close()

        logger.info("All connections closed")

    # =========================================================================
    # Message Handling
    # =========================================================================

    def _handle_message(self, payload: bytes | str, arrival_time_ms: int | None = None) -> bool:
        """
        Decode one transport message and route it to its partition.

        Returns:
            True if the event was queued, False if it was dropped
        """
        self.stats.messages_consumed += 1

        try:
            raw = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Dropping event: invalid JSON ({e})")
            self.stats.invalid_messages += 1
            return False

        if not isinstance(raw, dict):
            logger.warning("Dropping event: payload is not a JSON object")
            self.stats.invalid_messages += 1
            return False

        self._runner.submit(raw, arrival_time_ms if arrival_time_ms is not None else _now_ms())
        return True

    def replay_file(self, path: str | Path) -> int:
        """
        Feed a JSON-lines file through the engine and wait for completion.

        Arrival time for events without a timestamp is the replay wall clock.

        Returns:
            Number of lines read
        """
        count = 0
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                self._handle_message(line)
                count += 1

        self._runner.drain()
        logger.info(f"Replayed {count} event(s) from {path}")
        return count

    # =========================================================================
    # Dashboard
    # =========================================================================

    def _create_stats_table(self) -> Table:
        """Create a rich table with detector statistics."""
        table = Table(title="[*] TravelWatch Fraud Detector", expand=True)

        table.add_column("Metric", style="cyan", no_wrap=True)
        table.add_column("Value", style="green", justify="right")

        pipeline = self._runner.stats() if self._runner else None

        table.add_row("[>] Messages Consumed", f"{self.stats.messages_consumed:,}")
        table.add_row("[x] Invalid Messages", f"{self.stats.invalid_messages:,}")
        if pipeline is not None:
            table.add_row("[+] Transactions Processed", f"{pipeline.transactions_processed:,}")
            table.add_row("   +-- Malformed", f"{pipeline.malformed:,}")
            table.add_row("   +-- Late Drops", f"{pipeline.late_drops:,}")
            table.add_row("   +-- Duplicates", f"{pipeline.duplicate_drops:,}")
            table.add_row("[!] Fraud Candidates", f"[red]{pipeline.candidates_emitted:,}[/red]")
            table.add_row("[B] Buffered", f"{self._runner.buffered():,}")
            table.add_row("[O] Overflow Evictions", f"{pipeline.overflow_evictions:,}")
            table.add_row("[x] Errors", f"{pipeline.errors + self.stats.transport_errors:,}")
        table.add_row("[T] Uptime", f"{self.stats.uptime_seconds:.0f}s")

        return table

    # =========================================================================
    # Main Processing Loop
    # =========================================================================

    def _install_signal_handlers(self) -> None:
        def signal_handler(sig: int, frame: Any) -> None:
            logger.info("Shutdown signal received...")
            self._running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _print_banner(self, mode: str) -> None:
        self.console.print(Panel.fit(
            "[bold blue]TravelWatch[/bold blue]\n"
            "[dim]Real-Time Impossible Travel Detection[/dim]\n"
            f"[yellow]{mode}[/yellow]",
            border_style="blue",
        ))

    def start(self, show_dashboard: bool = True) -> None:
        """
        Start the fraud detector service.

        This runs the main processing loop that:
        1. Consumes transactions from Kafka
        2. Routes them to their partition workers
        3. Publishes fraud candidates

        Args:
            show_dashboard: Whether to show real-time stats dashboard
        """
        self._running = True
        self._install_signal_handlers()
        self._print_banner("Fraud Detector Service")

        logger.info("Initializing connections...")
        self._init_kafka_consumer()
        self._init_sink()
        self._init_lookup()
        self._init_runner()

        logger.info("Fraud Detector Service started!")
        logger.info(f"Consuming from: {self.topic_in}")
        logger.info(f"Publishing candidates to: {self.topic_out}")

        try:
            if show_dashboard:
                with Live(console=self.console, refresh_per_second=1) as live:
                    while self._running:
                        live.update(self._create_stats_table())
                        self._poll_once()
            else:
                last_log_time = time.time()
                while self._running:
                    self._poll_once()

                    # Log stats periodically
                    if time.time() - last_log_time > 10:
                        stats = self._runner.stats()
                        logger.info(
                            f"Stats: {stats.transactions_processed} processed, "
                            f"{stats.candidates_emitted} candidates emitted"
                        )
                        last_log_time = time.time()
        except Exception as e:
            logger.exception(f"Fatal error in detector: {e}")
        finally:
            self._close_connections()
            self.console.print("\n[green][+] Detector service stopped gracefully[/green]")

    def _poll_once(self) -> None:
        msg = self._consumer.poll(timeout=0.1)

        if msg is None:
            return

        if msg.error():
            if msg.error().code() != KafkaError._PARTITION_EOF:
                logger.error(f"Kafka error: {msg.error()}")
                self.stats.transport_errors += 1
            return

        self._handle_message(msg.value(), _now_ms())

    def replay(self, path: str | Path, show_dashboard: bool = False) -> None:
        """Run the engine once over a JSON-lines file, writing candidates to stdout."""
        self._print_banner(f"Replay: {path}")

        if self._sink is None:
            self._sink = JsonLinesCandidateSink()
        self._init_lookup()
        self._init_runner()

        try:
            self.replay_file(path)
            if show_dashboard:
                self.console.print(self._create_stats_table())
        finally:
            self._close_connections()

        stats = self._runner.stats()
        logger.info(
            f"Replay finished: {stats.transactions_processed} processed, "
            f"{stats.malformed} malformed, {stats.candidates_emitted} candidates"
        )


# =============================================================================
# CLI Interface
# =============================================================================

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="TravelWatch Fraud Detector Service",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--kafka-servers", "-k",
        type=str,
        default=None,
        help="Kafka bootstrap servers (overrides config)",
    )

    parser.add_argument(
        "--topic-in", "-i",
        type=str,
        default=None,
        help="Input topic for transactions (overrides config)",
    )

    parser.add_argument(
        "--topic-out", "-o",
        type=str,
        default=None,
        help="Output topic for fraud candidates (overrides config)",
    )

    parser.add_argument(
        "--consumer-group", "-g",
        type=str,
        default=None,
        help="Kafka consumer group ID (overrides config)",
    )

    parser.add_argument(
        "--input-file", "-f",
        type=Path,
        default=None,
        help="Replay a JSON-lines file instead of consuming Kafka",
    )

    parser.add_argument(
        "--window-seconds", "-w",
        type=int,
        default=None,
        help="Join window W in seconds (overrides config)",
    )

    parser.add_argument(
        "--retention-seconds", "-r",
        type=int,
        default=None,
        help="Retention horizon R in seconds, must be >= W (overrides config)",
    )

    parser.add_argument(
        "--partitions", "-p",
        type=int,
        default=None,
        help="Number of partition workers (overrides config)",
    )

    parser.add_argument(
        "--no-dashboard",
        action="store_true",
        help="Disable real-time dashboard",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args(argv)


def build_join_settings(args: argparse.Namespace, base: JoinSettings) -> JoinSettings:
    """Apply CLI overrides on top of the configured join settings."""
    overrides = {
        "window_seconds": args.window_seconds,
        "retention_seconds": args.retention_seconds,
        "partitions": args.partitions,
    }
    values = base.model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})

    # Widen R along with W when only the window was raised on the command line
    if args.retention_seconds is None and values["retention_seconds"] < values["window_seconds"]:
        values["retention_seconds"] = values["window_seconds"]

    return JoinSettings(**values)


def main(argv: list[str] | None = None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    settings = get_settings()

    # Configure logging
    log_level = "DEBUG" if args.verbose else settings.log_level
    logger.remove()
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{message}</cyan>",
    )

    try:
        join = build_join_settings(args, settings.join)
    except ValidationError as e:
        logger.error(f"Invalid join configuration: {e}")
        sys.exit(2)

    detector = FraudDetectorService(
        kafka_servers=args.kafka_servers,
        topic_in=args.topic_in,
        topic_out=args.topic_out,
        consumer_group=args.consumer_group,
        join=join,
    )

    if args.input_file is not None:
        detector.replay(args.input_file, show_dashboard=not args.no_dashboard)
    else:
        detector.start(show_dashboard=not args.no_dashboard)


if __name__ == "__main__":
    main()
