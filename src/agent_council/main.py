"""CLI entrypoint for agent-council."""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from agent_council import __version__
from agent_council.config import ConfigError, Settings
from agent_council.orchestrator.contracts import cleanup_stale_temp_files
from agent_council.orchestrator.controllers import (
    CacheClearCommand,
    CacheExportCommand,
    CacheListCommand,
    CommandResult,
    CouncilCliController,
    CouncilJobCommand,
    CouncilResultsCommand,
    CouncilStartCommand,
    CouncilStatusCommand,
    CouncilWaitCommand,
    format_progress_line,
)
from agent_council.orchestrator.models import UsageError
from agent_council.orchestrator.status import JobStatusSnapshot

click.rich_click.USE_MARKDOWN = True
COUNCIL_CONTROLLER = CouncilCliController()
PROGRESS_THROTTLE_SECONDS = 0.5
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version=__version__, prog_name="agent-council")
@click.option("--debug", is_flag=True, default=False, help="Verbose logging and execution stats.")
@click.pass_context
def agent_council(ctx: click.Context, debug: bool) -> None:
    """Fan one prompt out to several CLI agents and collect their answers."""

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format=LOG_FORMAT,
    )
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug

    settings = Settings.from_env()
    for directory in (settings.cache_dir, settings.jobs_dir):
        cleanup_stale_temp_files(directory)


@agent_council.command("start")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Council YAML config. Defaults to COUNCIL_CONFIG or ./council.config.yaml.")
@click.option("--chairman", default=None, help="Chairman role (auto, claude, codex, ...).")
@click.option("--jobs-dir", type=click.Path(path_type=Path), default=None,
              help="Where job directories are created. Defaults to COUNCIL_JOBS_DIR.")
@click.option("--scenario", default=None,
              help="Scenario template name, or `auto` to detect from the prompt.")
@click.option("--timeout", "timeout_seconds", type=click.FloatRange(min=0), default=None,
              help="Per-member timeout in seconds; overrides the config value.")
@click.option("--include-chairman", is_flag=True, default=False,
              help="Keep the chairman's own CLI among the members.")
@click.option("--exclude-chairman", is_flag=True, default=False,
              help="Drop the chairman's own CLI from the members.")
@click.option("--no-cache", is_flag=True, default=False, help="Ignore cached results.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print job metadata as JSON.")
@click.argument("prompt", nargs=-1)
def start(  # noqa: PLR0913
    config_path: Path | None,
    chairman: str | None,
    jobs_dir: Path | None,
    scenario: str | None,
    timeout_seconds: float | None,
    include_chairman: bool,
    exclude_chairman: bool,
    no_cache: bool,
    as_json: bool,
    prompt: tuple[str, ...],
) -> None:
    """Create a job and launch one detached worker per member."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.start(
            CouncilStartCommand(
                prompt=" ".join(prompt).strip(),
                config_path=config_path,
                jobs_dir=jobs_dir,
                chairman=chairman,
                scenario=scenario,
                timeout_seconds=timeout_seconds,
                include_chairman=include_chairman,
                exclude_chairman=exclude_chairman,
                no_cache=no_cache,
                as_json=as_json,
            ),
        )
    _emit(result)


@agent_council.command("status")
@click.option("--json", "output_format", flag_value="json", default=True, help="JSON (default).")
@click.option("--text", "output_format", flag_value="text", help="One summary line.")
@click.option("--checklist", "output_format", flag_value="checklist", help="Checklist view.")
@click.option("--verbose", is_flag=True, default=False, help="List members in --text mode.")
@click.argument("job_dir", type=click.Path(path_type=Path))
def status(output_format: str, verbose: bool, job_dir: Path) -> None:
    """Show aggregate job status once."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.status(
            CouncilStatusCommand(job_dir=job_dir, output_format=output_format, verbose=verbose),
        )
    _emit(result)


@agent_council.command("wait")
@click.option("--cursor", default=None, help="Cursor from the previous wait call.")
@click.option("--bucket", default=None, help="Terminal members per wakeup, or `auto`.")
@click.option("--interval-ms", type=click.IntRange(min=0), default=250, show_default=True,
              help="Poll interval (minimum 50ms).")
@click.option("--timeout-ms", type=click.IntRange(min=0), default=0, show_default=True,
              help="Give up after this long; 0 waits until progress.")
@click.option("--quiet", is_flag=True, default=False, help="No progress line on stderr.")
@click.argument("job_dir", type=click.Path(path_type=Path))
def wait(  # noqa: PLR0913
    cursor: str | None,
    bucket: str | None,
    interval_ms: int,
    timeout_ms: int,
    quiet: bool,
    job_dir: Path,
) -> None:
    """Block until the job crosses a progress bucket, then print the new state."""

    progress = None if quiet or not sys.stderr.isatty() else _ProgressLine()
    try:
        with _translating_errors():
            result = COUNCIL_CONTROLLER.wait(
                CouncilWaitCommand(
                    job_dir=job_dir,
                    cursor=cursor,
                    bucket=bucket,
                    interval_ms=interval_ms,
                    timeout_ms=timeout_ms,
                ),
                on_poll=progress,
            )
    finally:
        if progress is not None:
            progress.close()
    _emit(result)


@agent_council.command("results")
@click.option("--json", "as_json", is_flag=True, default=False, help="Raw results as JSON.")
@click.option("--output", "output_path", type=click.Path(path_type=Path), default=None,
              help="Write markdown results to this file.")
@click.option("--show-stats", is_flag=True, default=False, help="Print execution stats.")
@click.argument("job_dir", type=click.Path(path_type=Path))
@click.pass_context
def results(
    ctx: click.Context,
    as_json: bool,
    output_path: Path | None,
    show_stats: bool,
    job_dir: Path,
) -> None:
    """Render member outputs, consensus points and failures."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.results(
            CouncilResultsCommand(
                job_dir=job_dir,
                as_json=as_json,
                output_path=output_path,
                show_stats=show_stats,
            ),
            debug=bool((ctx.obj or {}).get("debug")),
        )
    _emit(result)


@agent_council.command("stop")
@click.argument("job_dir", type=click.Path(path_type=Path))
def stop(job_dir: Path) -> None:
    """Send SIGTERM to every running member."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.stop(CouncilJobCommand(job_dir=job_dir))
    _emit(result)


@agent_council.command("clean")
@click.argument("job_dir", type=click.Path(path_type=Path))
def clean(job_dir: Path) -> None:
    """Delete a job directory."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.clean(CouncilJobCommand(job_dir=job_dir))
    _emit(result)


@agent_council.group()
def cache() -> None:
    """Cached result commands."""


@cache.command("list")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print entries as JSON.")
def cache_list(as_json: bool) -> None:
    """List cached results, newest first."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.cache_list(CacheListCommand(as_json=as_json))
    _emit(result)


@cache.command("clear")
@click.argument("key", required=False)
def cache_clear(key: str | None) -> None:
    """Remove one cached result, or all of them."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.cache_clear(CacheClearCommand(key=key))
    _emit(result)


@cache.command("export")
@click.option("--output", "output_path", type=click.Path(path_type=Path), default=None,
              help="Write markdown results to this file.")
@click.argument("key")
def cache_export(output_path: Path | None, key: str) -> None:
    """Re-render the results of a cached job."""

    with _translating_errors():
        result = COUNCIL_CONTROLLER.cache_export(
            CacheExportCommand(key=key, output_path=output_path),
        )
    _emit(result)


class _ProgressLine:
    """Throttled single-line progress renderer for interactive stderr."""

    def __init__(self) -> None:
        self._last = 0.0
        self._written = False

    def __call__(self, snapshot: JobStatusSnapshot) -> None:
        now = time.monotonic()
        if now - self._last < PROGRESS_THROTTLE_SECONDS:
            return
        self._last = now
        self._written = True
        click.echo(f"\r{format_progress_line(snapshot)}", nl=False, err=True)

    def close(self) -> None:
        if self._written:
            click.echo("", err=True)


@contextmanager
def _translating_errors() -> Iterator[None]:
    try:
        yield
    except UsageError as error:
        raise click.UsageError(str(error)) from error
    except ConfigError as error:
        raise click.ClickException(str(error)) from error
    except OSError as error:
        logger.debug("Command failed", exc_info=True)
        raise click.ClickException(str(error)) from error


def _emit(result: CommandResult) -> None:
    for warning in result.warnings:
        click.echo(warning, err=True)
    for line in result.lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_council()
