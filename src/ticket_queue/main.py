"""CLI entrypoint for ticket-queue."""

import logging
from pathlib import Path

import rich_click as click

from ticket_queue import __version__
from ticket_queue.controllers import DemoCommand, PendingCommand, QueueCliController
from ticket_queue.stores import registered_stores

click.rich_click.USE_MARKDOWN = True
CONTROLLER = QueueCliController()


@click.group()
@click.version_option(version=__version__, prog_name="ticket-queue")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def ticket_queue(verbose: bool) -> None:
    """Ticket queue CLI."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@ticket_queue.command("demo")
@click.option(
    "--tasks",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many synthetic tasks to submit.",
)
@click.option("--concurrent", type=click.IntRange(min=1), default=None, help="Batches in flight.")
@click.option("--batch-size", type=click.IntRange(min=1), default=None, help="Tasks per batch.")
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Attempts per task.")
@click.option(
    "--fail-every",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Fail the first attempt of every N-th task (0 disables).",
)
@click.option(
    "--work-seconds",
    type=click.FloatRange(min=0),
    default=0.01,
    show_default=True,
    help="Simulated work per task.",
)
@click.option("--filo", is_flag=True, help="Process newest submissions first.")
@click.option(
    "--store",
    type=click.Choice(registered_stores()),
    default=None,
    help="Store backend (defaults to TICKET_QUEUE_STORE or memory).",
)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def demo(  # noqa: PLR0913
    tasks: int,
    concurrent: int | None,
    batch_size: int | None,
    max_retries: int | None,
    fail_every: int,
    work_seconds: float,
    filo: bool,
    store: str | None,
    db_path: Path | None,
) -> None:
    """Run a synthetic workload through a queue and report the outcome."""

    result = CONTROLLER.run_demo(
        DemoCommand(
            tasks=tasks,
            concurrent=concurrent,
            batch_size=batch_size,
            max_retries=max_retries,
            fail_every=fail_every,
            work_seconds=work_seconds,
            filo=filo,
            store=store,
            db_path=db_path,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Demo run did not resolve every ticket.")


@ticket_queue.command("pending")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="How many pending entries to display.",
)
def pending(db_path: Path | None, limit: int) -> None:
    """List pending tasks persisted in a SQLite store."""

    _emit_lines(CONTROLLER.list_pending(PendingCommand(db_path=db_path, limit=limit)))


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ticket_queue()
