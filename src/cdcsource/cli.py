import asyncio
import logging
import time

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from cdcsource.core.config import SourceConfig, StartupMode
from cdcsource.core.errors import CdcSourceError
from cdcsource.core.models import Position

console = Console()


def _config_from_options(**kw) -> SourceConfig:
    position = kw.pop("startup_position", None)
    columns = kw.pop("columns", ())
    try:
        return SourceConfig(
            startup_position=Position(position) if position is not None else None,
            columns=tuple(columns) or None,
            **kw,
        )
    except ValueError as e:
        raise click.UsageError(str(e)) from e


@click.group()
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def cli(log_level: str) -> None:
    """cdcsource: incremental snapshot + change-log capture."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


@cli.command("plan")
@click.option("--db", "database", required=True, help="DuckDB database file")
@click.option("--tables", "table_pattern", default=r"main\..*", show_default=True, help="Regex over schema.table")
@click.option("--key-column", default=None, help="Chunk key column (default: single-column primary key)")
@click.option("--chunk-size", type=int, default=8_096, show_default=True, help="Target rows per chunk")
@click.option("--no-incremental", is_flag=True, help="One whole-table chunk per table")
def plan_cmd(database: str, table_pattern: str, key_column: str | None, chunk_size: int, no_incremental: bool) -> None:
    """Print the snapshot chunk plan of a database."""
    from cdcsource.clients.duckdb_source import DuckDBSource
    from cdcsource.orchestration.source import build_plan

    config = _config_from_options(
        table_pattern=table_pattern,
        key_column=key_column,
        chunk_size=chunk_size,
        incremental_snapshot=not no_incremental,
    )
    db = DuckDBSource(database)
    try:
        plan = build_plan(config, db, db)
    except CdcSourceError as e:
        raise click.ClickException(str(e)) from e
    finally:
        db.close()

    table = Table(title=f"chunk plan ({plan.chunk_count} chunks)")
    table.add_column("split id")
    table.add_column("key")
    table.add_column("lower", justify="right")
    table.add_column("upper", justify="right")
    for table_id, chunks in plan.chunks.items():
        if not chunks:
            table.add_row(str(table_id), plan.key_columns[table_id], "[dim]empty[/]", "")
        for c in chunks:
            table.add_row(
                c.split_id,
                c.key_column,
                "-inf" if c.lower_bound is None else str(c.lower_bound),
                "+inf" if c.upper_bound is None else str(c.upper_bound),
            )
    console.print(table)


@cli.command("run")
@click.option("--db", "database", required=True, help="DuckDB database file")
@click.option("--out", "out_root", required=True, help="Output root for Parquet shards")
@click.option("--checkpoint-dir", required=True, help="Directory for checkpoint files")
@click.option("--tables", "table_pattern", default=r"main\..*", show_default=True, help="Regex over schema.table")
@click.option("--key-column", default=None, help="Chunk key column (default: single-column primary key)")
@click.option("--column", "columns", multiple=True, help="Projected column; repeat (default: all)")
@click.option("--chunk-size", type=int, default=8_096, show_default=True)
@click.option("--parallelism", type=int, default=4, show_default=True, help="Reader workers")
@click.option(
    "--startup-mode",
    type=click.Choice([m.value for m in StartupMode]),
    default=StartupMode.INITIAL.value,
    show_default=True,
)
@click.option("--startup-position", type=int, default=None, help="Log position for --startup-mode specific")
@click.option("--checkpoint-interval", type=float, default=5.0, show_default=True, help="Seconds between checkpoints")
@click.option("--duration", type=float, default=None, help="Stop after N seconds (default: until Ctrl+C)")
def run_cmd(
    database: str,
    out_root: str,
    checkpoint_dir: str,
    table_pattern: str,
    key_column: str | None,
    columns: tuple[str, ...],
    chunk_size: int,
    parallelism: int,
    startup_mode: str,
    startup_position: int | None,
    checkpoint_interval: float,
    duration: float | None,
) -> None:
    """Snapshot the tables, then stream changes into Parquet shards."""
    from cdcsource.clients.duckdb_source import DuckDBSource
    from cdcsource.orchestration.source import IncrementalSource
    from cdcsource.storage.checkpoint import FileCheckpointStore
    from cdcsource.storage.sinks import ParquetEventSink

    config = _config_from_options(
        table_pattern=table_pattern,
        key_column=key_column,
        columns=columns,
        chunk_size=chunk_size,
        parallelism=parallelism,
        startup_mode=StartupMode(startup_mode),
        startup_position=startup_position,
        checkpoint_interval_s=checkpoint_interval,
    )

    async def run() -> None:
        db = DuckDBSource(database)
        source = IncrementalSource(
            config,
            scanner=db,
            change_log=db,
            sink=ParquetEventSink(out_root),
            checkpoint_store=FileCheckpointStore(checkpoint_dir),
        )
        t0 = time.time()
        try:
            await source.start()
            await source.join(timeout=duration)
        finally:
            await source.stop()
            db.close()

        s = source.stats
        console.print(f"[bold]done[/]: {time.time() - t0:.2f}s")
        console.print(
            f"[bold]summary[/]: "
            f"[green]chunks[/]={s.chunks_finished}  "
            f"[green]snapshot_rows[/]={s.snapshot_rows}  "
            f"[green]stream_events[/]={s.stream_events}  "
            f"[yellow]retries[/]={s.retries}  "
            f"[yellow]restarts[/]={s.restarts}  "
            f"checkpoints={s.checkpoints}"
        )

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("[yellow]interrupted[/]")
    except CdcSourceError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e


@cli.command("inspect-checkpoint")
@click.argument("checkpoint_dir")
def inspect_checkpoint_cmd(checkpoint_dir: str) -> None:
    """Summarize the latest checkpoint in CHECKPOINT_DIR."""
    from cdcsource.storage.checkpoint import FileCheckpointStore

    cp = FileCheckpointStore(checkpoint_dir).load_latest()
    if cp is None:
        raise click.ClickException(f"no checkpoint in {checkpoint_dir}")

    state = cp.global_state
    console.print(f"[bold]checkpoint {cp.checkpoint_id}[/] @ {time.ctime(cp.created_at)}")

    table = Table()
    table.add_column("table")
    table.add_column("chunks", justify="right")
    table.add_column("finished", justify="right")
    table.add_column("assigned", justify="right")
    for table_id in state.table_ids:
        ids = [c.split_id for c in state.chunks.get(table_id, [])]
        table.add_row(
            str(table_id),
            str(len(ids)),
            str(sum(1 for sid in ids if sid in state.finished)),
            str(sum(1 for sid in ids if sid in state.assigned)),
        )
    console.print(table)

    stream = state.stream_split
    if stream is None:
        console.print("stream split: [dim]not built yet[/]")
    else:
        console.print(
            f"stream split: after position [cyan]{stream.starting_position}[/], "
            f"{len(stream.finished_chunks)} finished chunks, horizon {stream.snapshot_horizon()}"
        )


if __name__ == "__main__":
    cli()
