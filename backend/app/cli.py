"""
CLI entrypoint for the fleet WhatsApp alert service.

    fleet-alerts serve
    fleet-alerts test overspeed 966500000000 --vehicle-id TEST-CMD --direct
    fleet-alerts test overspeed 966500000000 --speed 140 --address "Olaya Street"
    fleet-alerts sweep --grace 0
    fleet-alerts templates
    fleet-alerts init-db
"""

import asyncio
import json
from typing import Any, Dict, Optional

import typer

from backend.app.core.config import get_settings
from backend.app.core.database import build_engine, close_db, init_db
from backend.app.core.errors import FleetAlertError
from backend.app.core.logging_config import setup_logging
from backend.app.notifications.models import Message
from backend.app.notifications.runtime import build_runtime
from backend.app.notifications.templates import TemplateResolver

app = typer.Typer(help="Fleet WhatsApp alerts CLI")


def _echo_json(data: Dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2, default=str))


@app.command()
def serve():
    """Start the webhook server using Uvicorn."""
    import uvicorn

    settings = get_settings()
    typer.echo(f"Starting server on {settings.HOST}:{settings.PORT}...")
    uvicorn.run(
        "backend.app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
    )


@app.command()
def test(
    alert_type: str = typer.Argument(..., help="Alert type, e.g. overspeed, ignition_on"),
    phone: str = typer.Argument(..., help="Recipient MSISDN"),
    vehicle_id: str = typer.Option("TEST-CMD", "--vehicle-id", help="Vehicle id to report"),
    direct: bool = typer.Option(False, "--direct", help="Send synchronously, bypassing the queue"),
    message: Optional[str] = typer.Option(None, "--message", help="Override the dummy alert message"),
    speed: Optional[str] = typer.Option(None, "--speed", help="Override the dummy speed (km/h)"),
    address: Optional[str] = typer.Option(None, "--address", help="Override the dummy address"),
    occurred_at: Optional[str] = typer.Option(None, "--occurred-at", help="Override the event timestamp"),
):
    """Send a test WhatsApp alert through the real pipeline."""
    settings = get_settings()
    setup_logging(settings)
    overrides = {
        key: value
        for key, value in (
            ("message", message), ("speed", speed), ("address", address), ("occurred_at", occurred_at),
        )
        if value is not None
    }

    async def runner() -> Dict[str, Any]:
        runtime = build_runtime(settings)
        await runtime.start(sweep=False)
        try:
            summary = await runtime.service.trigger_test_alert(
                alert_type, phone, vehicle_id=vehicle_id, direct=direct, overrides=overrides,
            )
            if not direct:
                drained = await runtime.queue.drain(
                    timeout=settings.DELIVERY_RETRY_DELAY_SECONDS * settings.DELIVERY_MAX_ATTEMPTS + 30,
                )
                async with runtime.session_factory() as session:
                    row = await session.get(Message, summary["message_id"])
                    summary["outcome"] = row.to_dict() if row is not None else None
                summary["drained"] = drained
            return summary
        finally:
            await runtime.close()

    typer.echo(f"Testing WhatsApp alert: {alert_type} → {phone} (vehicle {vehicle_id})")
    try:
        summary = asyncio.run(runner())
    except FleetAlertError as exc:
        typer.echo(f"Error: {exc.message}", err=True)
        raise typer.Exit(1)

    _echo_json(summary)
    outcome = summary.get("outcome") or {}
    if outcome.get("status") != "sent":
        typer.echo("WhatsApp alert failed", err=True)
        raise typer.Exit(1)
    typer.echo("WhatsApp alert sent")


@app.command()
def sweep(
    grace: Optional[float] = typer.Option(
        None, "--grace", help="Seconds a message must be idle before recovery (default from settings)",
    ),
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for recovered deliveries to finish"),
):
    """Re-enqueue pending/failed messages and deliver them."""
    settings = get_settings()
    setup_logging(settings)

    async def runner() -> int:
        runtime = build_runtime(settings)
        await runtime.start(sweep=False)
        try:
            count = await runtime.service.recover_undelivered(grace_seconds=grace)
            if wait and count:
                await runtime.queue.drain(
                    timeout=settings.DELIVERY_RETRY_DELAY_SECONDS * settings.DELIVERY_MAX_ATTEMPTS + 30,
                )
            return count
        finally:
            await runtime.close()

    count = asyncio.run(runner())
    typer.echo(f"Recovered {count} message(s)")


@app.command()
def templates(
    english_only: bool = typer.Option(False, "--english", help="Only list *_en templates"),
):
    """List the alert type → template mapping."""
    settings = get_settings()
    resolver = TemplateResolver(settings.ALERT_TEMPLATES, settings.DEFAULT_LANGUAGE)
    mapping = resolver.english_templates() if english_only else settings.ALERT_TEMPLATES
    for alert_type, entry in mapping.items():
        language = resolver.language_for(entry.template)
        typer.echo(f"{alert_type:<20} {entry.template:<24} {language:<3} {entry.priority.value}")


@app.command("init-db")
def init_db_command():
    """Create the alerts and messages tables."""
    settings = get_settings()
    setup_logging(settings)

    async def runner() -> None:
        engine = build_engine(settings)
        try:
            await init_db(engine)
        finally:
            await close_db(engine)

    asyncio.run(runner())
    typer.echo("Database tables created")


if __name__ == "__main__":
    app()
