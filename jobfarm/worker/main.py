"""
Worker entry point for out-of-process job execution.

``jobfarm-worker run FUNCTION DIRECTORY JOB_ID`` executes one job of the
filesystem protocol: it marks the job started, loads its input, calls the
function, writes the output and finally writes the done marker. The local
process pool launches this command directly; the cluster scheduler runs it
on compute nodes.

``jobfarm-worker serve`` runs a long-lived queue daemon worker.
"""

import asyncio
import logging
from pathlib import Path

import typer

from jobfarm.config import Settings, get_settings
from jobfarm.errors import ConfigurationError, ProtocolError
from jobfarm.observability.logging import bind_context, setup_logging
from jobfarm.protocol.files import JobFileProtocol
from jobfarm.types.job import JobOutcome
from jobfarm.worker.handlers import (
    SERIALIZATION_ERRORS,
    execute_job,
    resolve_function,
    serialization_failure,
)

logger = logging.getLogger(__name__)

app = typer.Typer(no_args_is_help=True, add_completion=False)


def run_job(
    function_name: str,
    directory: str | Path,
    job_id: int,
    settings: Settings | None = None,
    width: int | None = None,
) -> JobOutcome:
    """
    Execute one protocol job.

    The output file is always written before the done marker, and both are
    written even when the job fails so the dispatcher observes the error.

    Args:
        function_name: Registered handler name or importable reference.
        directory: The protocol directory.
        job_id: 1-based job id.
        settings: Settings to use.
        width: Zero-padded id width used by the dispatcher.

    Returns:
        The job outcome.
    """
    protocol = JobFileProtocol(directory, settings=settings, width=width)
    protocol.mark_started(job_id)

    try:
        job_input = protocol.read_input(job_id)
        function = resolve_function(function_name)
    except (ProtocolError, ConfigurationError) as e:
        logger.error(f"Cannot run job: {e}", extra={"job_id": job_id})
        outcome = JobOutcome(job_id=job_id, success=False, error=str(e))
    else:
        outcome = execute_job(function, job_id, job_input.args, job_input.store)

    try:
        protocol.write_output(job_id, outcome)
    except SERIALIZATION_ERRORS as e:
        outcome = serialization_failure(outcome, e)
        protocol.write_output(job_id, outcome)
    protocol.mark_done(job_id)
    return outcome


@app.command("run")
def run(
    function: str = typer.Argument(..., help="Handler name or module:function"),
    directory: Path = typer.Argument(..., help="Protocol directory"),
    job_id: int = typer.Argument(..., help="1-based job id"),
    width: int | None = typer.Option(None, "--width", help="Zero-padded job id width"),
) -> None:
    """Execute one job from a protocol directory."""
    setup_logging()
    bind_context(job_id=job_id, function=function)

    outcome = run_job(function, directory, job_id, width=width)

    if not outcome.success:
        raise typer.Exit(code=1)


@app.command("serve")
def serve(
    redis_url: str | None = typer.Option(None, "--redis-url", help="Redis connection URL"),
    queue: str | None = typer.Option(None, "--queue", help="Queue name"),
    worker_id: str | None = typer.Option(None, "--id", help="Custom worker identifier"),
) -> None:
    """Run a queue daemon worker until SIGTERM/SIGINT."""
    from jobfarm.worker.daemon import run_async

    setup_logging()
    settings = get_settings()

    asyncio.run(
        run_async(
            redis_url=redis_url or settings.redis_url,
            queue_name=queue or settings.queue_name,
            worker_id=worker_id,
        )
    )


if __name__ == "__main__":
    app()
