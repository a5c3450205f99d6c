"""CLI runner: aggregate live signals for a few rounds and report latency/health"""
import logging

logger = logging.getLogger(__name__)

import argparse
import asyncio
import time

from dotenv import load_dotenv
load_dotenv()

from logging_config import setup_logging
from engine.signals_health import HealthTracker, build_health_report
from engine.telemetry import nearest_rank_p95
from main import build_aggregator


def percentile_50(values):
    ordered = sorted(values)
    return ordered[(len(ordered) - 1) // 2] if ordered else 0.0


async def run(rounds: int, interval: float) -> dict:
    aggregator = build_aggregator()
    tracker = HealthTracker(aggregator.registry.clock)
    latencies = []

    for i in range(rounds):
        if i:
            await asyncio.sleep(interval)
        start = time.perf_counter()
        snapshot = await aggregator.get_market_signals()
        elapsed = (time.perf_counter() - start) * 1000
        latencies.append(elapsed)
        logger.info(
            "Round %d: %d items (%s) in %.0fms | %s",
            i + 1, len(snapshot.items), snapshot.origin, elapsed,
            ", ".join(f"{k}={v}" for k, v in snapshot.sources.items()),
        )

    report = build_health_report(aggregator.registry, aggregator.cache, tracker)
    logger.info("=" * 50)
    logger.info("Rounds: %d | p50 %.0fms | p95 %.0fms", rounds, percentile_50(latencies), nearest_rank_p95(latencies))
    logger.info("Health: %s", report["status"])
    for name, source in report["sources"].items():
        logger.info(
            "%s: success %.0f%% timeout %.0f%% p95 %.0fms breaker %s",
            name, source["success_rate"] * 100, source["timeout_rate"] * 100,
            source["p95_ms"], source["breaker_state"],
        )
    return report


def main():
    parser = argparse.ArgumentParser(description="Run signal aggregation rounds against live sources")
    parser.add_argument("--rounds", type=int, default=5)
    parser.add_argument("--interval", type=float, default=1.0, help="seconds between rounds")
    args = parser.parse_args()
    if args.rounds <= 0:
        parser.error("--rounds must be positive")

    setup_logging()
    asyncio.run(run(args.rounds, args.interval))


if __name__ == "__main__":
    main()
