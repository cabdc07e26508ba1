# src/lexiforge/cli.py
"""lexiforge Command Line Interface.

Entry point for the lexiforge CLI tool.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from lexiforge import __version__
from lexiforge.contracts import ClassifiedError, MergeLockedError, RunAbortedError
from lexiforge.core.checkpoint import CheckpointStore
from lexiforge.core.checkpoint.serialization import write_json
from lexiforge.core.config import LexiforgeSettings, LoggingSettings, load_settings, redacted_config
from lexiforge.core.logging import configure_logging
from lexiforge.core.wordlist import load_word_list

if TYPE_CHECKING:
    from lexiforge.engine.merge import MergeEngine

__all__ = ["app"]

logger = structlog.get_logger(__name__)

app = typer.Typer(
    name="lexiforge",
    help="lexiforge: resumable parallel dictionary generation.",
    no_args_is_help=True,
)


@dataclass(frozen=True)
class CliState:
    config_path: Path | None
    verbose: bool
    json_logs: bool


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"lexiforge version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(f"Error: .env file not found: {env_file}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    config: Path | None = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to settings YAML file (defaults plus LEXIFORGE_* environment when omitted).",
    ),
    no_dotenv: bool = typer.Option(False, "--no-dotenv", help="Skip loading .env file."),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
        exists=False,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose/debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Output structured JSON logs."),
) -> None:
    """lexiforge: resumable parallel dictionary generation."""
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "INFO")

    if not no_dotenv:
        _load_dotenv(env_file=env_file)
    elif env_file is not None:
        typer.secho("Warning: --env-file ignored because --no-dotenv is set.", fg=typer.colors.YELLOW, err=True)

    ctx.obj = CliState(config_path=config.expanduser() if config else None, verbose=verbose, json_logs=json_logs)


def _settings(ctx: typer.Context) -> LexiforgeSettings:
    """Load settings and apply the global logging flags, exiting on config errors."""
    state: CliState = ctx.obj
    try:
        settings = load_settings(state.config_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {state.config_path}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {state.config_path}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None

    logging_settings = LoggingSettings(
        level="DEBUG" if state.verbose else settings.logging.level,
        json_output=state.json_logs or settings.logging.json_output,
    )
    configure_logging(json_output=logging_settings.json_output, level=logging_settings.level)
    settings = settings.model_copy(update={"logging": logging_settings})
    logger.debug("settings_loaded", config=redacted_config(settings))
    return settings


def _run_pipeline(settings: LexiforgeSettings, start_index: int | None, *, reset_config: bool) -> None:
    from lexiforge.engine.supervisor import Supervisor

    try:
        summary = Supervisor(settings).run(start_index, reset_existing_config=reset_config)
    except RunAbortedError as e:
        typer.secho(f"Run aborted: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None

    for outcome in summary.outcomes:
        line = f"  chunk {outcome.chunk_id}: {outcome.status} ({outcome.words_processed} words)"
        if outcome.error:
            line += f" - resume at {outcome.last_processed_index}: {outcome.error}"
        typer.echo(line)
    if summary.finalized:
        typer.echo(f"Global result written to {CheckpointStore(settings.directories.output_root).global_result_path}")
    if not summary.ok:
        typer.secho(
            f"{len(summary.failed)} chunk(s) did not complete; run 'lexiforge continue' to resume.",
            fg=typer.colors.YELLOW,
            err=True,
        )
        raise typer.Exit(1)


@app.command("continue")
def continue_(
    ctx: typer.Context,
    start_index: int | None = typer.Option(
        None,
        "--start-index",
        "-s",
        min=0,
        help="Global word index to start from (default: reuse the previous run's plan).",
    ),
) -> None:
    """Resume processing from the last checkpoints."""
    _run_pipeline(_settings(ctx), start_index, reset_config=False)


@app.command()
def reset(
    ctx: typer.Context,
    start_index: int = typer.Option(0, "--start-index", "-s", min=0, help="Global word index to start from."),
    discard_checkpoints: bool = typer.Option(
        False,
        "--discard-checkpoints",
        help="Delete all chunk directories and progress descriptors first.",
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Restart with the default prompt configuration."""
    settings = _settings(ctx)
    if discard_checkpoints:
        store = CheckpointStore(settings.directories.output_root)
        if not yes:
            typer.confirm(f"Delete all checkpoints under {store.root}?", abort=True)
        store.clear_run_state()
        typer.echo("Checkpoints discarded.")
    _run_pipeline(settings, start_index, reset_config=True)


def _merge_engine(settings: LexiforgeSettings) -> MergeEngine:
    from lexiforge.engine.merge import MergeEngine

    return MergeEngine(CheckpointStore(settings.directories.output_root))


@app.command()
def merge(
    ctx: typer.Context,
    chunk_id: int = typer.Argument(..., min=0, help="Chunk to complete."),
    force: bool = typer.Option(False, "--force", "-f", help="Complete the chunk even if batches are missing."),
) -> None:
    """Write one chunk's final artifact from its fragments."""
    engine = _merge_engine(_settings(ctx))
    try:
        records = engine.complete_chunk(chunk_id, allow_incomplete=force)
    except (ValueError, MergeLockedError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    if records is None:
        typer.echo(f"Chunk {chunk_id} has no data to merge.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Chunk {chunk_id} completed with {len(records)} words.")


@app.command("merge-all")
def merge_all(
    ctx: typer.Context,
    discard_progress: bool = typer.Option(
        False,
        "--discard-progress",
        help="Delete the progress directory after writing the global result.",
    ),
) -> None:
    """Complete every chunk (including incomplete ones) and write the global result."""
    engine = _merge_engine(_settings(ctx))
    try:
        completed = engine.complete_all(allow_incomplete=True)
        finalized = engine.finalize_all(preserve_progress=not discard_progress, include_incomplete=True)
    except MergeLockedError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Completed {len(completed)} chunk(s).")
    if not finalized:
        typer.echo("Nothing to merge.", err=True)
        raise typer.Exit(1)
    typer.echo("Global result written.")


@app.command()
def complete(ctx: typer.Context) -> None:
    """Write final artifacts for chunks whose batches are all committed."""
    engine = _merge_engine(_settings(ctx))
    try:
        completed = engine.complete_all(allow_incomplete=False)
    except MergeLockedError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    for chunk_id, words in sorted(completed.items()):
        typer.echo(f"  chunk {chunk_id}: {words} words")
    typer.echo(f"Completed {len(completed)} chunk(s).")


@app.command()
def recover(ctx: typer.Context) -> None:
    """Consolidate committed work of every unfinished chunk."""
    engine = _merge_engine(_settings(ctx))
    try:
        recovered = engine.recover()
    except MergeLockedError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    for chunk_id, words in sorted(recovered.items()):
        typer.echo(f"  chunk {chunk_id}: {words} words recovered")
    typer.echo(f"Recovered {len(recovered)} chunk(s).")


@app.command()
def cleanup(
    ctx: typer.Context,
    chunk: int | None = typer.Option(None, "--chunk", min=0, help="Only clean this chunk."),
) -> None:
    """Delete fragments and progress descriptors."""
    engine = _merge_engine(_settings(ctx))
    try:
        deleted = engine.cleanup(chunk)
    except MergeLockedError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    typer.echo(f"Deleted {deleted} file(s).")


@app.command()
def count(ctx: typer.Context) -> None:
    """Show how many words have been processed."""
    store = CheckpointStore(_settings(ctx).directories.output_root)
    descriptors = store.list_progress()
    in_progress = sum(d.total_processed_count for d in descriptors)
    for descriptor in descriptors:
        typer.echo(
            f"  chunk {descriptor.chunk_id}: {descriptor.total_processed_count}/{descriptor.total_words_in_scope}"
        )
    typer.echo(f"Words processed in tracked chunks: {in_progress}")
    merged = store.read_global_result()
    if merged is not None:
        typer.echo(f"Words in global result: {len(merged)}")


@app.command("test-batch")
def test_batch(
    ctx: typer.Context,
    start: int = typer.Argument(..., min=0, help="Global index of the first word."),
    batch_size: int | None = typer.Option(None, "--batch-size", "-b", min=1, help="Words in the batch."),
) -> None:
    """Run one batch through the transformer without checkpointing."""
    from lexiforge.engine.batch_executor import validate_batch_result
    from lexiforge.plugins.llm import build_transformer, ensure_prompt_config

    settings = _settings(ctx)
    directories = settings.directories
    try:
        words = load_word_list(directories.word_list, comment_marker=directories.comment_marker)
    except (OSError, UnicodeDecodeError) as e:
        typer.secho(f"Error: cannot read word list: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None

    batch = list(words[start : start + (batch_size or settings.batch.batch_size)])
    if not batch:
        typer.echo(f"No words at index {start} (word list has {len(words)}).", err=True)
        raise typer.Exit(1)

    try:
        transformer = build_transformer(settings.llm, ensure_prompt_config(directories.config_dir))
    except ValueError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    try:
        records = validate_batch_result(batch, transformer.transform(batch))
    except ClassifiedError as e:
        typer.secho(f"Batch failed ({e.kind}): {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from None
    finally:
        transformer.close()

    path = directories.test_results_dir / f"test_{start}.json"
    write_json(path, records)
    typer.echo(f"{len(records)} word(s) saved to {path}")


if __name__ == "__main__":
    app()
