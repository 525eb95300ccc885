"""
CLI commands for tagging worker management.

Kept apart from storage_api/cli.py so the worker can run on its own host.
"""

import asyncio
import logging
import os
from pathlib import Path

import click

from storage_api.adapters.queue import QueueFactory
from storage_api.adapters.storage import StorageFactory
from storage_api.database import get_metadata_store
from storage_api.errors import AnalysisFailed
from storage_api.settings import get_settings
from tagging_workers.taggers import TaggerFactory
from tagging_workers.worker import EnrichmentWorker

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@click.group()
def cli():
    """CLI commands for the tagging worker"""
    pass


@cli.command()
@click.option("--mode",
              type=click.Choice(["local-dev", "aws-mock", "aws-prod"]),
              default=None,
              help="Override the deployment mode")
@click.option("--concurrency", type=int, default=None,
              help="Maximum jobs processed at once (defaults to WORKER_CONCURRENCY)")
@click.option("--drain/--no-drain", default=False,
              help="Process the jobs currently queued and exit")
def worker(mode, concurrency, drain):
    """Start the tagging worker"""
    if mode:
        os.environ["DEPLOYMENT_MODE"] = mode
        # Clear settings cache to pick up new mode
        get_settings.cache_clear()

    settings = get_settings()
    _configure_logging(settings.log_level)
    print(f"Starting tagging worker in {settings.deployment_mode} mode...")

    queue = QueueFactory.get_queue_handler(settings)
    print(f"Queue handler initialized: {type(queue).__name__}")

    worker_instance = EnrichmentWorker(
        queue=queue,
        storage=StorageFactory.get_storage(settings),
        metadata_store=get_metadata_store(settings),
        tagger=TaggerFactory.get_tagger(settings),
        concurrency=concurrency or settings.worker_concurrency,
        poll_interval=settings.worker_poll_interval_seconds,
        analysis_timeout=settings.analysis_timeout_seconds,
        temp_dir=str(Path(settings.storage_dir) / "tmp"),
    )

    try:
        if drain:
            outcomes = asyncio.run(worker_instance.run_until_empty())
            failed = [o for o in outcomes if o.error]
            print(f"Processed {len(outcomes)} jobs, {len(failed)} failed")
        else:
            print("Worker ready to process tasks")
            asyncio.run(worker_instance.listen_for_tasks())
    except KeyboardInterrupt:
        print("Received shutdown signal...")
        worker_instance.stop()
    finally:
        print("Worker shutdown complete")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def tag_file(path):
    """Run the configured tagger on a local image and print the tags"""
    settings = get_settings()
    _configure_logging(settings.log_level)
    tagger = TaggerFactory.get_tagger(settings)
    try:
        tags = tagger.analyze(path.read_bytes())
    except AnalysisFailed as e:
        raise click.ClickException(f"Analysis failed: {e.message}")
    print(", ".join(tags) if tags else "(no tags detected)")


@cli.command()
def show_worker_config():
    """Show worker-specific configuration"""
    settings = get_settings()

    print("Tagging Worker Configuration:")
    print(f"  Deployment Mode: {settings.deployment_mode}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  S3 Bucket: {settings.s3_bucket_name}")
    print(f"  SQS Queue Name: {settings.sqs_queue_name}")
    print(f"  SQS Queue URL: {settings.sqs_queue_url}")
    print(f"  Tagger: {settings.resolved_tagger_backend}")
    print(f"  Concurrency: {settings.worker_concurrency}")
    print(f"  Analysis Timeout: {settings.analysis_timeout_seconds}s")
    print(f"  Visibility Timeout: {settings.queue_visibility_timeout_seconds}s")


if __name__ == "__main__":
    cli()
