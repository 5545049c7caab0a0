#!/usr/bin/env python3
"""
Production Scraper Runner

Uses the full infrastructure with:
- Per-target circuit breakers and rate limiting
- Classification-driven retries and fallback chains
- Normalization with data quality reports
- Health monitoring with alerts
- SQLite and JSON persistence
"""

import sys
import json
import asyncio
import logging
import argparse
from pathlib import Path
from datetime import datetime
from typing import Optional, List

from .alerts import AlertManager
from .config import load_config_from_env, ScraperConfig, OrchestratorConfig
from .core.orchestrator import ScraperOrchestrator
from .models import ScrapeJob, JobFilters, OutputConfig
from .targets import get_target, list_targets, load_job_file
from ..database import SQLiteRecordStore, JsonFileSink

logger = logging.getLogger(__name__)


def setup_logging(log_dir: Path, verbose: bool = False):
    """Console plus a dated log file"""
    log_dir.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_dir / f'scraper_{datetime.now():%Y%m%d}.log', encoding='utf-8'),
        ]
    )


def build_stores(job: ScrapeJob, orchestrator_config: OrchestratorConfig, output: Optional[str]) -> List:
    """Record stores for a job's output settings"""
    fmt = job.output.format
    if fmt == 'none':
        return []
    if fmt == 'database':
        path = job.output.destination or orchestrator_config.database_path
        return [SQLiteRecordStore(str(path) if path else None)]
    if fmt == 'json':
        destination = output or job.output.destination or \
            str(orchestrator_config.data_dir / f'events_{datetime.now():%Y%m%d}.json')
        stores = [JsonFileSink(destination)]
        if orchestrator_config.database_path:
            stores.append(SQLiteRecordStore(str(orchestrator_config.database_path)))
        return stores
    raise ValueError(f"Unknown output format: {fmt}")


def create_orchestrator(
    scraper_config: ScraperConfig,
    orchestrator_config: OrchestratorConfig,
    stores: Optional[List] = None,
) -> ScraperOrchestrator:
    """Create and configure the orchestrator"""
    orchestrator_config.data_dir.mkdir(parents=True, exist_ok=True)

    orchestrator = ScraperOrchestrator(
        scraper_config,
        orchestrator_config,
        stores=stores,
        alerts=AlertManager(),
    )

    validation = orchestrator.validate_config()
    for warning in validation['warnings']:
        logger.warning(f"Config: {warning}")
    if not validation['valid']:
        raise ValueError(f"Invalid configuration: {'; '.join(validation['errors'])}")

    return orchestrator


async def run_job(
    job: ScrapeJob,
    scraper_config: ScraperConfig,
    orchestrator_config: OrchestratorConfig,
    output: Optional[str] = None,
) -> dict:
    """Run one job end to end"""
    logger.info("=" * 60)
    logger.info(f"Starting job {job.name} ({len(job.targets)} targets)")
    logger.info("=" * 60)

    orchestrator = create_orchestrator(
        scraper_config, orchestrator_config, build_stores(job, orchestrator_config, output)
    )
    for target in job.targets:
        check = orchestrator.validate_target(target)
        for warning in check['warnings']:
            logger.warning(f"[{target.id}] {warning}")
        if not check['valid']:
            raise ValueError(f"Invalid target {target.id}: {'; '.join(check['errors'])}")

    try:
        result = await orchestrator.execute_job(job)
    finally:
        await orchestrator.close()

    for outcome in result.outcomes:
        session = outcome.session
        if session.status.value == 'completed':
            note = ' (skipped)' if session.skipped else ''
            logger.info(f"✅ {session.target_id}: {len(outcome.events)} events{note}")
        else:
            errors = '; '.join(str(e) for e in session.errors) or session.status.value
            logger.error(f"❌ {session.target_id}: {errors}")

    print("\n" + orchestrator.get_health_summary())
    return {
        **result.summary(),
        'metrics': orchestrator.get_aggregated_metrics(),
    }


def job_from_args(args) -> ScrapeJob:
    if args.job:
        return load_job_file(args.job)
    location = {}
    if args.location:
        location['location'] = args.location
    if args.city:
        location['city'] = args.city
    return ScrapeJob(
        targets=[get_target(t) for t in args.target],
        name='cli',
        filters=JobFilters(location=location or None, keywords=args.keyword or []),
        output=OutputConfig(format=args.format),
    )


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(description='Event Harvester Scraper Runner')
    parser.add_argument('--job', type=str, help='Job definition (JSON file)')
    parser.add_argument(
        '--target',
        action='append',
        help='Built-in target id (repeatable); see --list'
    )
    parser.add_argument('--location', type=str, help='Location slug for {location} URLs (e.g. ca--san-francisco)')
    parser.add_argument('--city', type=str, help='City for {city} URLs and venues')
    parser.add_argument('--keyword', action='append', help='Keep only events mentioning this (repeatable)')
    parser.add_argument('--format', choices=['json', 'database', 'none'], default='json')
    parser.add_argument('--output', type=str, help='Output file path')
    parser.add_argument('--list', action='store_true', help='List built-in targets')
    parser.add_argument('--serve', action='store_true', help='Serve the health API')
    parser.add_argument('--port', type=int, default=8000)
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose logging'
    )

    args = parser.parse_args(argv)
    scraper_config, orchestrator_config = load_config_from_env()
    setup_logging(orchestrator_config.log_dir, args.verbose)

    if args.list:
        print(json.dumps(list_targets(), indent=2))
        return 0

    if args.serve:
        from ..api.main import serve
        serve(create_orchestrator(scraper_config, orchestrator_config), port=args.port)
        return 0

    if not args.job and not args.target:
        parser.error('either --job or --target is required')

    result = asyncio.run(run_job(job_from_args(args), scraper_config, orchestrator_config, args.output))
    print(json.dumps(result, indent=2, default=str))
    return 0 if result['failed'] == 0 else 1


if __name__ == '__main__':
    sys.exit(main())
