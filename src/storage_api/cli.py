# cli.py
import logging
import os

import click

from storage_api.database import get_metadata_store
from storage_api.settings import get_settings

logger = logging.getLogger(__name__)


@click.group()
def cli():
    """CLI commands for the storage API"""
    pass

# Worker commands live in src/tagging_workers/cli.py


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    print(f"  Deployment Mode: {settings.deployment_mode}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  S3 Bucket: {settings.s3_bucket_name}")
    print(f"  SQS Queue Name: {settings.sqs_queue_name}")
    print(f"  SQS Queue URL: {settings.sqs_queue_url}")
    print(f"  Storage Dir: {settings.storage_dir}")
    print(f"  Database: {settings.database_path}")
    print(f"  Signed URL TTL: {settings.signed_url_ttl_seconds}s")


@cli.command()
def init_db():
    """Create the metadata tables if they do not exist"""
    settings = get_settings()
    store = get_metadata_store(settings)
    print(f"Metadata store ready at {store.db_path} ({store.count()} records)")


@cli.command()
@click.option("--mode",
              type=click.Choice(["local-dev", "aws-mock", "aws-prod"]),
              default=None,
              help="Override the deployment mode")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
def serve(mode, host, port):
    """Run the API with uvicorn"""
    import uvicorn

    from storage_api.main import create_app

    if mode:
        os.environ["DEPLOYMENT_MODE"] = mode
        # Clear settings cache to pick up new mode
        get_settings.cache_clear()

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    print(f"Starting API in {settings.deployment_mode} mode on {host}:{port}")
    uvicorn.run(create_app(settings), host=host, port=port)


if __name__ == "__main__":
    cli()
