"""
Command-line interface for sensor-alerts.

Provides commands to run the API and the escalation worker, initialize
the database, and run diagnostic checks.

Usage:
    sensor-alerts serve               # Run the API server
    sensor-alerts escalation-worker   # Run the escalation scheduler
    sensor-alerts init-db             # Initialize database
    sensor-alerts health              # Check service health
    sensor-alerts simulate-reading    # Push one reading through the evaluator
    sensor-alerts test-notification   # Send a synthetic notification
"""

import asyncio
import json
import signal
import sys

import click

from src.config.settings import get_settings
from src.observability.logging import setup_logging
from src.observability.metrics import get_metrics
from src.observability.tracing import setup_tracing_from_settings


@click.group()
@click.option("--debug", is_flag=True, help="Enable debug logging")
def main(debug: bool) -> None:
    """Sensor Alerts - threshold evaluation, escalation and notification."""
    if debug:
        import os
        os.environ["LOG_LEVEL"] = "DEBUG"
        get_settings.cache_clear()

    setup_logging()
    setup_tracing_from_settings()


@main.command()
@click.option("--host", default=None, help="API server host")
@click.option("--port", default=None, type=int, help="API server port")
@click.option("--reload", is_flag=True, help="Enable auto-reload (dev only)")
@click.option("--metrics-port", default=8000, help="Metrics server port")
def serve(host: str | None, port: int | None, reload: bool, metrics_port: int) -> None:
    """Start the sensor alerts API server."""
    import uvicorn

    settings = get_settings()
    host = host or settings.api_host
    port = port or settings.api_port

    # Start metrics server on separate port
    get_metrics().start_server(port=metrics_port)

    click.echo(f"Starting API server on {host}:{port}")
    click.echo(f"Metrics available on http://localhost:{metrics_port}/metrics")
    click.echo(f"API docs available on http://localhost:{port}/docs")

    uvicorn.run(
        "src.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


@main.command("escalation-worker")
@click.option("--metrics/--no-metrics", default=True, help="Enable metrics server")
@click.option("--metrics-port", default=8001, help="Metrics server port")
def escalation_worker(metrics: bool, metrics_port: int) -> None:
    """Run the escalation scheduler.

    Ticks over unresolved alerts, escalates those whose level timeout has
    elapsed, and replays deferred notifications whose quiet-hours window
    has opened. Run exactly one worker, or set ESCALATION_IN_PROCESS=true
    on a single API instance instead.

    Example:
        sensor-alerts escalation-worker
        sensor-alerts escalation-worker --metrics-port 9101
    """
    from src.api.dependencies import cleanup_dependencies, get_escalation_scheduler

    async def run():
        scheduler = await get_escalation_scheduler()

        if metrics:
            get_metrics().start_server(port=metrics_port)

        # Handle shutdown signals
        loop = asyncio.get_event_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(scheduler.stop()))

        try:
            await scheduler.run()
        finally:
            await cleanup_dependencies()

    asyncio.run(run())


@main.command("init-db")
def init_db() -> None:
    """Initialize the database schema."""
    from src.storage.database import Database

    async def run():
        db = Database()
        await db.connect()

        await db.ensure_schema()

        click.echo("Database initialized successfully")

        await db.close()

    asyncio.run(run())


@main.command()
def health() -> None:
    """Check health of all dependencies."""
    import structlog
    logger = structlog.get_logger()

    async def check():
        results: dict[str, bool] = {}
        settings = get_settings()

        # Check Redis
        try:
            import redis.asyncio as aioredis

            client = aioredis.from_url(str(settings.redis_url))
            results["redis"] = bool(await client.ping())
            await client.aclose()
        except Exception as e:
            results["redis"] = False
            logger.error("Redis health check failed", error=str(e))

        # Check PostgreSQL
        try:
            from src.storage.database import Database
            db = Database()
            await db.connect()
            results["postgres"] = await db.health_check()
            await db.close()
        except Exception as e:
            results["postgres"] = False
            logger.error("Postgres health check failed", error=str(e))

        # Check notification providers
        results["email_configured"] = settings.email_configured
        results["sms_configured"] = settings.sms_configured

        # Print results
        click.echo("\nHealth Check Results:")
        click.echo("-" * 40)

        all_healthy = True
        for name, status in results.items():
            icon = "✓" if status else "✗"
            color = "green" if status else "red"
            click.echo(click.style(f"  {icon} {name}: {status}", fg=color))
            if name == "postgres" and not status:
                all_healthy = False

        click.echo("-" * 40)

        if all_healthy:
            click.echo(click.style("All core services healthy!", fg="green"))
            sys.exit(0)
        else:
            click.echo(click.style("Some services unhealthy!", fg="red"))
            sys.exit(1)

    asyncio.run(check())


@main.command("simulate-reading")
@click.option("--sensor-id", required=True, type=int, help="Sensor reporting the reading")
@click.option(
    "--metric",
    "metric_kind",
    required=True,
    type=click.Choice(["TEMPERATURA", "HUMEDAD", "PESO", "PRESION"], case_sensitive=False),
    help="Metric kind",
)
@click.option("--value", required=True, type=float, help="Measured value")
@click.option("--unit", default="", help="Unit of the value")
def simulate_reading(sensor_id: int, metric_kind: str, value: float, unit: str) -> None:
    """Push one reading through the evaluator.

    Example:
        sensor-alerts simulate-reading --sensor-id 25 --metric TEMPERATURA --value 40
    """
    from src.alerts.errors import AlertingError
    from src.api.dependencies import (
        cleanup_dependencies,
        get_lifecycle_manager,
        get_reading_evaluator,
    )

    async def run():
        exit_code = 0
        try:
            evaluator = await get_reading_evaluator()
            result = await evaluator.process({
                "sensor_id": sensor_id,
                "metric_kind": metric_kind.upper(),
                "value": value,
                "unit": unit,
            })

            color = "green" if result.classification == "NORMAL" else "red"
            click.echo(click.style(f"Classification: {result.classification}", fg=color))
            if result.alert is not None:
                click.echo(json.dumps(result.alert.to_dict(), indent=2, ensure_ascii=False))

            # Let level-0 dispatch finish before shutting down
            lifecycle = await get_lifecycle_manager()
            await lifecycle.drain(timeout=60.0)
        except AlertingError as e:
            click.echo(click.style(f"Rejected: {e}", fg="red"))
            exit_code = 1
        finally:
            await cleanup_dependencies()
        sys.exit(exit_code)

    asyncio.run(run())


@main.command("test-notification")
@click.option(
    "--channel",
    required=True,
    type=click.Choice(["email", "sms", "realtime"]),
    help="Channel to send on",
)
@click.option("--recipient", required=True, help="Email, phone number, or sensor:<id> topic")
@click.option(
    "--severity",
    default="MEDIA",
    type=click.Choice(["BAJA", "MEDIA", "ALTA", "CRITICA"]),
    help="Severity shown in the message",
)
def test_notification(channel: str, recipient: str, severity: str) -> None:
    """Send a synthetic notification through one channel.

    Example:
        sensor-alerts test-notification --channel email --recipient ops@example.com
    """
    from src.alerts.errors import AlertingError
    from src.api.dependencies import cleanup_dependencies, get_dispatcher

    async def run():
        exit_code = 0
        try:
            dispatcher = await get_dispatcher()
            result = await dispatcher.send_test(channel, recipient, severity)
            if result.success:
                click.echo(click.style(f"✓ Sent via {channel} to {recipient}", fg="green"))
            else:
                click.echo(click.style(f"✗ {channel} failed: {result.error}", fg="red"))
                exit_code = 1
        except AlertingError as e:
            click.echo(click.style(f"Rejected: {e}", fg="red"))
            exit_code = 1
        finally:
            await cleanup_dependencies()
        sys.exit(exit_code)

    asyncio.run(run())


if __name__ == "__main__":
    main()
