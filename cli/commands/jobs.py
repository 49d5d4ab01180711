"""Job Commands - Submit background jobs and poll their status"""

import typer
from rich.console import Console

from ..client.endpoints import OffloadClient
from ..client.base import OffloadError
from ..utils.config_manager import config
from ..utils.formatting import create_job_panel, print_error, print_info, print_success

console = Console()
app = typer.Typer(name="jobs", help="Background job commands")


@app.command("submit")
def submit_job(
    limit: int | None = typer.Option(
        None, "--limit", "-l", help="Upper bound for the prime search"
    ),
    include_primes: bool = typer.Option(
        False, "--include-primes", help="Return the primes, not just the count"
    ),
    wait: bool = typer.Option(
        False, "--wait", "-w", help="Poll until the job completes or fails"
    ),
    interval: float | None = typer.Option(
        None, "--interval", help="Seconds between status polls"
    ),
    timeout: float | None = typer.Option(
        None, "--timeout", help="Give up waiting after this many seconds"
    ),
):
    """🚀 Submit a prime counting job"""
    base_url = config.get("api.base_url")

    try:
        with OffloadClient(base_url) as client:
            submitted = client.submit_job(limit=limit, include_primes=include_primes)
            job_id = submitted["jobId"]
            print_success(f"Job queued: {job_id}")
            print_info(f"Status location: {submitted['statusLocation']}")

            if not wait:
                return

            job = client.wait_for_job(
                job_id,
                interval=interval or float(config.get("jobs.poll_interval", 1.0)),
                timeout=timeout or float(config.get("jobs.wait_timeout", 300)),
            )
            console.print(create_job_panel(job))
            if job.get("state") == "failed":
                raise typer.Exit(1)

    except OffloadError as e:
        print_error(f"Failed to submit job: {e}")
        raise typer.Exit(1) from None


@app.command("status")
def job_status(job_id: str = typer.Argument(..., help="Job ID returned on submission")):
    """📋 Show a job's status"""
    base_url = config.get("api.base_url")

    try:
        with OffloadClient(base_url) as client:
            job = client.get_job(job_id)
            console.print(create_job_panel(job))

    except OffloadError as e:
        if e.status_code == 404:
            print_error(f"Job {job_id} not found (it may have expired)")
        else:
            print_error(f"Failed to get job status: {e}")
        raise typer.Exit(1) from None
