"""
Batch job runner.

    python -m trendscreen.jobs prices --backfill
    python -m trendscreen.jobs all
"""

import argparse
import asyncio
import json
import sys
from typing import Any, List, Optional, Sequence

import structlog

from trendscreen.config import Settings, load_settings
from trendscreen.database import create_engine, create_session_factory
from trendscreen.exceptions import ConfigurationError
from trendscreen.schemas.common import JobResult
from trendscreen.services.breakout_builder import BreakoutSignalBuilder
from trendscreen.services.data_provider import DataProvider, FmpDataProvider
from trendscreen.services.loaders import FundamentalsLoader, PriceLoader, SymbolLoader
from trendscreen.services.moving_average_builder import MovingAverageBuilder
from trendscreen.services.noise_builder import NoiseSignalBuilder
from trendscreen.services.relative_strength import RelativeStrengthRanker
from trendscreen.services.store import SignalStore, SqlSignalStore
from trendscreen.utils.logging import setup_logging
from trendscreen.utils.retry import RetryPolicy

logger = structlog.get_logger()

# Pipeline order for "all"
JOB_NAMES = ["symbols", "prices", "fundamentals", "ma", "rs", "breakout", "noise"]
PROVIDER_JOBS = {"symbols", "prices", "fundamentals"}


async def run_job(
    name: str,
    settings: Settings,
    store: SignalStore,
    provider: Optional[DataProvider],
    backfill: bool = False,
) -> JobResult:
    if name in PROVIDER_JOBS and provider is None:
        raise ConfigurationError(f"job '{name}' needs a data provider")

    if name == "symbols":
        return await SymbolLoader(provider, store).run()
    if name == "prices":
        loader = PriceLoader(provider, store, settings.PRICE_CONCURRENCY, settings.PRICE_PAUSE_SECONDS)
        return await loader.run(backfill=backfill)
    if name == "fundamentals":
        loader = FundamentalsLoader(
            provider, store, settings.FUNDAMENTALS_CONCURRENCY, settings.FUNDAMENTALS_PAUSE_SECONDS
        )
        return await loader.run()
    if name == "ma":
        return await MovingAverageBuilder(store).run(backfill=backfill)
    if name == "rs":
        return await RelativeStrengthRanker(store).run(backfill=backfill)
    if name == "breakout":
        return await BreakoutSignalBuilder(store).run()
    if name == "noise":
        return await NoiseSignalBuilder(store).run()
    raise ValueError(f"unknown job: {name}")


async def run_jobs(names: Sequence[str], settings: Settings, backfill: bool = False) -> List[JobResult]:
    # Provider jobs need the key; fail before any work starts
    needs_provider = any(n in PROVIDER_JOBS for n in names)
    if needs_provider:
        settings.require_provider_credentials()

    policy = RetryPolicy.from_settings(settings)
    engine = create_engine(settings)
    store = SqlSignalStore(create_session_factory(engine), policy)
    provider = FmpDataProvider(settings, retry_policy=policy) if needs_provider else None

    results = []
    try:
        for name in names:
            logger.info("Job started", job=name, backfill=backfill)
            result = await run_job(name, settings, store, provider, backfill)
            logger.info(
                "Job finished",
                job=name,
                processed=result.processed,
                written=result.written,
                skipped=result.skipped,
                failed=result.failed,
                duration=result.duration_seconds,
            )
            results.append(result)
    finally:
        if provider is not None:
            await provider.aclose()
        await engine.dispose()
    return results


def _p(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="trendscreen.jobs", description="End-of-day data and signal batch jobs.")
    p.add_argument("job", choices=JOB_NAMES + ["all"], help="Job to run ('all' runs the full pipeline in order)")
    p.add_argument("--backfill", action="store_true", help="Backfill mode for prices, ma and rs")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    for warning in settings.config_warnings():
        logger.warning("Configuration warning", warning=warning)

    names = JOB_NAMES if args.job == "all" else [args.job]
    try:
        results = asyncio.run(run_jobs(names, settings, backfill=args.backfill))
    except ConfigurationError as e:
        logger.error("Configuration error", error=str(e))
        return 2

    _p([r.model_dump() for r in results])
    return 0


if __name__ == "__main__":
    sys.exit(main())
