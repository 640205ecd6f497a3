"""CLI entry point for job execution."""

import asyncio
import sys

import click

from twofa.core.logging import get_logger, setup_logging
from twofa.db.engine import create_db_engine
from twofa.db.session import create_session_factory
from twofa.jobs.cleanup import cleanup_expired_auth_data

logger = get_logger(__name__)

JOBS = ("cleanup_expired",)


@click.command()
@click.argument("job_key", type=click.Choice(JOBS))
@click.option("--database-url", default=None, help="Override DATABASE_URL for this run.")
def run(job_key: str, database_url: str | None):
    """
    Run a maintenance job.

    Example:
        python -m twofa.jobs.run cleanup_expired
    """
    setup_logging()

    async def run_async():
        engine = create_db_engine(database_url)
        try:
            if job_key == "cleanup_expired":
                result = await cleanup_expired_auth_data(create_session_factory(engine))
                click.echo(f"Job completed: {result}")
        finally:
            await engine.dispose()

    try:
        asyncio.run(run_async())
    except Exception as e:
        logger.error(f"Job failed: {e}", exc_info=True)
        click.echo(f"Job failed: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
