import importlib
import signal
import threading
from typing import Any, Mapping

import typer

from backend.app.core.config import settings
from backend.app.core.database import Database
from backend.app.core.errors import CoreError
from backend.app.core.logging import setup_logging
from backend.app.services.credit_rpc import CreditRpc
from backend.app.services.job_types import JobStatus, LedgerEntryType
from backend.app.services.jobs import JobStateMachine
from backend.app.services.pipeline import PipelineCoordinator

app = typer.Typer(help="Operate the credit ledger and the video job worker.")


def _database(database_url: str | None) -> Database:
    return Database(database_url)


def load_executors(spec: str) -> Mapping[JobStatus, Any]:
    """Resolve ``module:attribute`` to a step-to-executor mapping.

    The attribute may be the mapping itself or a zero-argument factory.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("Expected 'module:attribute'", param_hint="--executors")
    target = getattr(importlib.import_module(module_name), attr)
    executors = target() if callable(target) else target
    return {JobStatus(step): executor for step, executor in executors.items()}


DatabaseOption = typer.Option(
    None,
    "--database-url",
    help="SQLAlchemy URL. Defaults to VJ_DATABASE_URL.",
)


@app.command("worker")
def worker(
    executors: str = typer.Option(
        ...,
        "--executors",
        help="Import path of the step executor mapping, e.g. mypkg.steps:EXECUTORS.",
    ),
    worker_id: str = typer.Option(None, "--worker-id", help="Defaults to worker-<hostname>-<pid>."),
    poll_interval: float = typer.Option(None, "--poll-interval", min=0.1, help="Seconds between empty polls."),
    once: bool = typer.Option(False, "--once", help="Process at most one job and exit."),
    database_url: str = DatabaseOption,
) -> None:
    """Run the pipeline worker loop."""
    setup_logging(settings.log_level)
    coordinator = PipelineCoordinator(_database(database_url), load_executors(executors), worker_id=worker_id)

    if once:
        job_id = coordinator.run_once()
        typer.echo(f"Processed job {job_id}" if job_id else "No job available")
        return

    stop_event = threading.Event()

    def _stop(signum, _frame):
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    signal.signal(signal.SIGTERM, _stop)
    coordinator.run_forever(stop_event, poll_interval=poll_interval)


@app.command("balance")
def balance(
    user_id: str = typer.Argument(..., help="User whose balance to print."),
    database_url: str = DatabaseOption,
) -> None:
    typer.echo(f"{user_id}: {CreditRpc(_database(database_url)).get_credit_balance(user_id)}")


@app.command("grant")
def grant(
    user_id: str = typer.Argument(...),
    amount: int = typer.Argument(..., min=1),
    entry_type: LedgerEntryType = typer.Option(LedgerEntryType.GRANT, "--type", help="purchase or grant."),
    note: str = typer.Option(None, "--note"),
    idempotency_key: str = typer.Option(None, "--idempotency-key"),
    stripe_payment_id: str = typer.Option(None, "--stripe-payment-id", help="Payment backing a purchase."),
    database_url: str = DatabaseOption,
) -> None:
    """Add credits to a user's balance."""
    if entry_type not in (LedgerEntryType.GRANT, LedgerEntryType.PURCHASE):
        raise typer.BadParameter("Only purchase or grant entries can be added", param_hint="--type")
    rpc = CreditRpc(_database(database_url))
    rpc.add_credits(
        user_id,
        amount,
        type=entry_type,
        note=note,
        idempotency_key=idempotency_key,
        stripe_payment_id=stripe_payment_id,
    )
    typer.echo(f"Granted {amount} credits to {user_id}. Balance: {rpc.get_credit_balance(user_id)}")


@app.command("release")
def release(
    job_id: str = typer.Argument(..., help="Job whose held credits to return."),
    database_url: str = DatabaseOption,
) -> None:
    """Return every credit still held for a job."""
    released = CreditRpc(_database(database_url)).reservations.release_reserved_credits(job_id)
    typer.echo(f"Released {released} credits for job {job_id}")


@app.command("requeue")
def requeue(
    job_id: str = typer.Argument(..., help="Dead-lettered job to put back in the queue."),
    database_url: str = DatabaseOption,
) -> None:
    try:
        job = JobStateMachine(_database(database_url)).requeue_from_dead_letter(job_id)
    except CoreError as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(code=1) from exc
    typer.echo(f"Job {job.id} requeued ({job.status.value})")


def main() -> None:
    """Entry point for `python -m backend.cli`."""
    app()  # pragma: no cover


if __name__ == "__main__":
    main()  # pragma: no cover
