"""
OpenCTI exporter entry point.

Usage:
    opencti-exporter                              Serve /metrics on :10031
    opencti-exporter --url https://cti.example    Probe another instance
    opencti-exporter probe                        One-shot probe, printed as a table

Every option can also be set through the environment variable named in
its help text; OPENCTI_TOKEN is required.
"""

from __future__ import annotations

import logging
import signal
import threading

import click

from opencti_exporter import __version__
from opencti_exporter.collector.opencti_collector import OpenCTICollector
from opencti_exporter.config import (
    DEFAULT_METRICS_PATH,
    DEFAULT_OPENCTI_URL,
    DEFAULT_PORT,
    DEFAULT_SCRAPE_TIMEOUT,
    LOG_LEVELS,
    ExporterConfig,
)
from opencti_exporter.errors import ConfigurationError
from opencti_exporter.server import EXPORTER_NAME, build_registry, make_server


log = logging.getLogger("opencti_exporter")


class _URLAdapter(logging.LoggerAdapter):
    """Tags every collector log line with the OpenCTI URL it is about."""

    def process(self, msg, kwargs):
        return f"{msg} url={self.extra['url']}", kwargs


def _setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _build_collector(config: ExporterConfig) -> OpenCTICollector:
    return OpenCTICollector.from_url(
        config.opencti_url,
        config.opencti_token,
        subsystem=config.metrics_subsystem,
        logger=_URLAdapter(logging.getLogger("opencti_exporter.collector"), {"url": config.opencti_url}),
        timeout_seconds=config.scrape_timeout,
        health_access_key=config.health_access_key,
        verify=config.verify_tls,
    )


def serve(config: ExporterConfig, collector: OpenCTICollector):
    """Serve metrics until SIGINT or SIGTERM."""
    registry = build_registry(collector)
    server = make_server(
        registry,
        host=config.listen_address,
        port=config.port,
        metrics_path=config.metrics_path,
    )

    stop = threading.Event()

    def _on_signal(signum, frame):
        log.debug("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    thread = threading.Thread(target=server.serve_forever, name="http-server", daemon=True)
    thread.start()
    log.info("Listening on %s:%d, metrics at %s", config.listen_address or "0.0.0.0",
             server.server_address[1], config.metrics_path)

    try:
        stop.wait()
    finally:
        server.shutdown()
        server.server_close()
        thread.join()
        log.info("Server stopped")


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name=EXPORTER_NAME)
@click.option("--url", envvar="OPENCTI_URL", default=DEFAULT_OPENCTI_URL, show_default=True,
              help="OpenCTI URL to connect to [env: OPENCTI_URL]")
@click.option("--token", envvar="OPENCTI_TOKEN", default=None,
              help="OpenCTI token to use (required) [env: OPENCTI_TOKEN]")
@click.option("--port", envvar="PORT", default=DEFAULT_PORT, type=int, show_default=True,
              help="Port to run the HTTP server on [env: PORT]")
@click.option("--listen-address", envvar="LISTEN_ADDRESS", default="",
              help="Address to bind, all interfaces when empty [env: LISTEN_ADDRESS]")
@click.option("--log-level", envvar="LOG_LEVEL", default="info", show_default=True,
              type=click.Choice(LOG_LEVELS, case_sensitive=False),
              help="Which log level to log at [env: LOG_LEVEL]")
@click.option("--metrics-subsystem", envvar="METRICS_SUBSYSTEM", default="",
              help="The Prometheus subsystem for the metrics [env: METRICS_SUBSYSTEM]")
@click.option("--metrics-path", envvar="METRICS_PATH", default=DEFAULT_METRICS_PATH, show_default=True,
              help="The path to access the metrics [env: METRICS_PATH]")
@click.option("--scrape-timeout", envvar="SCRAPE_TIMEOUT", default=DEFAULT_SCRAPE_TIMEOUT, type=float,
              show_default=True, help="Time budget in seconds for one scrape [env: SCRAPE_TIMEOUT]")
@click.option("--health-access-key", envvar="OPENCTI_HEALTH_ACCESS_KEY", default=None,
              help="Access key for the OpenCTI /health endpoint [env: OPENCTI_HEALTH_ACCESS_KEY]")
@click.option("--verify-tls/--no-verify-tls", envvar="OPENCTI_VERIFY_TLS", default=True, show_default=True,
              help="Verify the OpenCTI TLS certificate [env: OPENCTI_VERIFY_TLS]")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging")
@click.pass_context
def cli(ctx, url: str, token: str, port: int, listen_address: str, log_level: str,
        metrics_subsystem: str, metrics_path: str, scrape_timeout: float,
        health_access_key: str, verify_tls: bool, verbose: bool):
    """OpenCTI exporter - Prometheus metrics for OpenCTI liveness and freshness."""
    config = ExporterConfig(
        opencti_token=token or "",
        opencti_url=url,
        port=port,
        listen_address=listen_address,
        log_level="debug" if verbose else log_level.lower(),
        metrics_subsystem=metrics_subsystem,
        metrics_path=metrics_path,
        scrape_timeout=scrape_timeout,
        health_access_key=health_access_key,
        verify_tls=verify_tls,
    )

    try:
        config.validate()
        _setup_logging(config.log_level)
        collector = _build_collector(config)
    except ConfigurationError as e:
        raise click.UsageError(str(e), ctx=ctx)

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["collector"] = collector

    # If no subcommand, serve metrics
    if ctx.invoked_subcommand is None:
        log.info("Starting %s version=%s", EXPORTER_NAME, __version__)
        try:
            serve(config, collector)
        finally:
            collector.close()


@cli.command()
@click.pass_context
def probe(ctx):
    """Probe OpenCTI once and print what a scrape would report."""
    from rich.console import Console
    from rich.table import Table

    collector: OpenCTICollector = ctx.obj["collector"]

    try:
        result = collector.probe()
    finally:
        collector.close()

    console = Console()

    status = "[bold green]UP[/bold green]" if result.up else "[bold red]DOWN[/bold red]"
    console.print(f"\n{collector.client.name()}: {status}")
    if result.error:
        console.print(f"  [dim]{result.error}[/dim]")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Entity type")
    table.add_column("Updated at")
    table.add_column("Value", justify="right")

    summary = result.summary()
    for key, metric_name in (("last_created", collector.last_created_name),
                             ("last_updated", collector.last_updated_name)):
        row = summary[key]
        if row is None:
            continue
        table.add_row(
            f"[cyan]{metric_name}[/cyan]",
            row["entity_type"],
            row["updated_at"],
            f"{row['timestamp_seconds']:.0f}",
        )
    table.add_row(f"[cyan]{collector.up_name}[/cyan]", "", "", f"{result.up:.0f}")

    console.print(table)
    console.print()

    ctx.exit(0 if result.up else 1)


if __name__ == "__main__":
    cli()
