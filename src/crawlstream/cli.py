"""Command-line interface for crawlstream."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from contextlib import aclosing
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, TextIO

import click
import structlog
from rich.console import Console
from rich.table import Table

from crawlstream import __version__
from crawlstream.checkpoint import CheckpointStore
from crawlstream.config.config import CheckpointPosition, Config, find_config_file
from crawlstream.errors import NormalizationError
from crawlstream.normalizer import parse_datetime
from crawlstream.observability import MetricsManager, configure_logging
from crawlstream.protocols import CrawlOutcome
from crawlstream.service import ConnectorService, CrawlRequest, IncrementalCrawlRequest
from crawlstream.sinks import JsonLinesSink
from crawlstream.sources import SOURCES, get_source

console = Console(stderr=True)
logger = structlog.get_logger(__name__)

EXIT_CANCELLED = 130


class ShutdownManager:
    """Turns SIGINT/SIGTERM into a cooperative cancellation of the running crawl."""

    def __init__(self) -> None:
        self.cancel_event = asyncio.Event()
        self._signals = (signal.SIGINT, signal.SIGTERM)

    def _handle(self, signum: int) -> None:
        if self.cancel_event.is_set():
            return
        console.print(f"[yellow]Received signal {signum}, stopping after the current item...[/yellow]")
        self.cancel_event.set()

    def install(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            try:
                loop.add_signal_handler(sig, self._handle, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers not supported on this platform", signal=sig)

    def uninstall(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in self._signals:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError):
                pass


def load_config(config_path: Optional[Path]) -> Config:
    path = config_path or find_config_file()
    if path is not None:
        return Config.from_yaml(path)
    return Config()


def apply_overrides(config: Config, **overrides: Any) -> Config:
    """Apply CLI options that were actually given onto the crawl and source sections."""
    crawl_fields = {k: v for k, v in overrides.items() if v is not None and k in type(config.crawl).model_fields}
    source_fields = {k: v for k, v in overrides.items() if v is not None and k in type(config.source).model_fields}
    return config.model_copy(
        update={
            "crawl": config.crawl.model_validate({**config.crawl.model_dump(), **crawl_fields}),
            "source": config.source.model_validate({**config.source.model_dump(), **source_fields}),
        }
    )


def crawl_key(config: Config, mode: str) -> str:
    return f"{config.source.name}:{mode}:{config.source.datasource_url}"


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides the config file)",
)
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str]) -> None:
    """crawlstream - stream a datasource into a search index with resumable checkpoints."""
    ctx.ensure_object(dict)
    try:
        cfg = load_config(Path(config) if config else None)
    except (OSError, ValueError) as e:
        raise click.ClickException(f"Could not load configuration: {e}") from e
    if log_level:
        cfg.monitoring = cfg.monitoring.model_copy(update={"log_level": log_level.upper()})
    configure_logging(cfg.monitoring)
    metrics_manager = MetricsManager(cfg.monitoring)
    metrics_manager.start()
    ctx.obj["config"] = cfg


def _source_options(func: Any) -> Any:
    options = [
        click.option("--source", "name", type=click.Choice(sorted(SOURCES)), help="Datasource plug-in"),
        click.option("--datasource-url", help="Datasource URL or CSV file path"),
        click.option("--token", "access_token", envvar="CRAWLSTREAM_TOKEN", help="Bearer token for the datasource"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _crawl_options(func: Any) -> Any:
    options = [
        click.option("--checkpoint", help="Start from this checkpoint instead of the stored one"),
        click.option("--resume/--no-resume", default=True, help="Resume from the checkpoint store"),
        click.option("--query-params", "custom_configuration", help="Custom configuration JSON"),
        click.option("--page-size", type=int, help="Records per page"),
        click.option("--output", "-o", type=click.File("w"), default="-", help="JSON lines output (default stdout)"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


async def _stream_to_output(
    service: ConnectorService,
    request: CrawlRequest,
    output: TextIO,
    store: CheckpointStore,
    key: str,
) -> Optional[CrawlOutcome]:
    shutdown = ShutdownManager()
    shutdown.install()
    sink = JsonLinesSink(output, store=store, crawl_key=key)
    if isinstance(request, IncrementalCrawlRequest):
        stream = service.start_incremental_crawl(request, cancel_event=shutdown.cancel_event)
    else:
        stream = service.start_full_crawl(request, cancel_event=shutdown.cancel_event)

    outcome: Optional[CrawlOutcome] = None
    try:
        async with service.source, aclosing(stream):
            async for bit in stream:
                await sink.emit(bit)
                if bit.is_terminal:
                    outcome = bit.status
    finally:
        shutdown.uninstall()
    console.print(f"[cyan]{sink.count} stream bits written[/cyan]")
    return outcome


def _make_source(cfg: Config) -> Any:
    try:
        return get_source(cfg.source.name, cfg.source)
    except ValueError as e:
        raise click.ClickException(str(e)) from e


def _run(
    ctx: click.Context, request_factory: Any, mode: str, checkpoint: Optional[str], resume: bool, **kw: Any
) -> None:
    cfg: Config = apply_overrides(ctx.obj["config"], **kw)
    source = _make_source(cfg)
    service = ConnectorService(source, cfg)
    store = CheckpointStore(cfg.checkpoint.path)
    key = crawl_key(cfg, mode)

    start = checkpoint
    if start is None and resume:
        start = store.load(key)
        if start is not None:
            console.print(f"[cyan]Resuming {mode} crawl from checkpoint {start}[/cyan]")

    request = request_factory(source.default_auth(), start)
    output = kw.get("output") or sys.stdout
    outcome = asyncio.run(_stream_to_output(service, request, output, store, key))

    if outcome is None:
        console.print("[yellow]Crawl cancelled[/yellow]")
        ctx.exit(EXIT_CANCELLED)
    if not outcome.is_success:
        console.print(f"[red]Crawl ended with {outcome.result.value}: {outcome.message}[/red]")
        ctx.exit(1)
    if mode == "full":
        # the next full crawl starts from the beginning
        asyncio.run(store.clear(key))
    console.print("[green]Crawl completed[/green]")


@cli.command()
@_source_options
@_crawl_options
@click.option(
    "--checkpoint-position",
    type=click.Choice([p.value for p in CheckpointPosition]),
    help="Which page an item's checkpoint points at",
)
@click.pass_context
def crawl(
    ctx: click.Context,
    checkpoint: Optional[str],
    resume: bool,
    custom_configuration: Optional[str],
    output: TextIO,
    **kw: Any,
) -> None:
    """Run a full crawl and write stream bits as JSON lines."""

    def factory(auth: Any, start: Optional[str]) -> CrawlRequest:
        return CrawlRequest(auth=auth, custom_configuration=custom_configuration or "", checkpoint=start)

    _run(ctx, factory, "full", checkpoint, resume, output=output, **kw)


@cli.command()
@_source_options
@_crawl_options
@click.option("--since", help="Previous crawl start (ISO-8601), used when no checkpoint is available")
@click.pass_context
def incremental(
    ctx: click.Context,
    checkpoint: Optional[str],
    resume: bool,
    custom_configuration: Optional[str],
    output: TextIO,
    since: Optional[str],
    **kw: Any,
) -> None:
    """Run an incremental crawl from the stored watermark."""
    previous_start: Optional[datetime] = None
    if since:
        try:
            previous_start = parse_datetime(since, field="since")
        except NormalizationError as e:
            raise click.BadParameter(e.message, param_hint="--since") from e

    def factory(auth: Any, start: Optional[str]) -> IncrementalCrawlRequest:
        return IncrementalCrawlRequest(
            auth=auth,
            custom_configuration=custom_configuration or "",
            checkpoint=start,
            previous_crawl_start=previous_start,
        )

    _run(ctx, factory, "incremental", checkpoint, resume, output=output, **kw)


@cli.command()
@click.option("--source", "name", type=click.Choice(sorted(SOURCES)), help="Datasource plug-in")
@click.option("--json", "as_json", is_flag=True, help="Print the schema as JSON")
@click.pass_context
def schema(ctx: click.Context, name: Optional[str], as_json: bool) -> None:
    """Show the property schema of a datasource."""
    cfg: Config = apply_overrides(ctx.obj["config"], name=name)
    service = ConnectorService(_make_source(cfg), cfg)
    data_schema = service.get_datasource_schema()

    if as_json:
        rows = [
            {"name": p.name, "type": p.type.value, "nullable": p.nullable, "queryable": p.queryable}
            for p in data_schema.properties
        ]
        click.echo(json.dumps(rows, indent=2))
        return

    table = Table(title=f"{cfg.source.name} schema")
    table.add_column("Property")
    table.add_column("Type")
    table.add_column("Nullable")
    table.add_column("Queryable")
    for prop in data_schema.properties:
        table.add_row(prop.name, prop.type.value, str(prop.nullable), str(prop.queryable))
    Console().print(table)


@cli.command("validate-config")
@click.option("--custom-config", help="Custom configuration JSON to validate")
@click.pass_context
def validate_config(ctx: click.Context, custom_config: Optional[str]) -> None:
    """Validate the loaded configuration and an optional custom configuration."""
    cfg: Config = ctx.obj["config"]
    service = ConnectorService(_make_source(cfg), cfg)
    outcome = service.validate_custom_configuration(custom_config)

    summary: Dict[str, Any] = {
        "connector": service.get_basic_connector_info(),
        "crawl": cfg.crawl.model_dump(mode="json"),
        "custom_configuration": outcome.to_dict(),
    }
    click.echo(json.dumps(summary, indent=2))
    if not outcome.is_success:
        ctx.exit(1)


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
