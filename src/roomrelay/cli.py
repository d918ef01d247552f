from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import anyio
import typer
from pydantic import ValidationError

from . import __version__
from .config import ConfigError
from .logging import get_logger, mask_secret, setup_logging
from .manager import LifecycleManager
from .model import DEFAULT_POLL_INTERVAL, Subscription
from .retry import RetryExhausted
from .runtime.api import RuntimeUnavailable
from .runtime.docker_runtime import DockerRuntime
from .settings import (
    ManagerSettings,
    SubscriptionRequest,
    load_manager_settings,
    load_worker_settings,
)
from .worker import run_worker

logger = get_logger(__name__)

app = typer.Typer(add_completion=False, no_args_is_help=True)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit()


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        help="Show the version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
) -> None:
    """Bridge chat rooms to webhooks, one worker per subscription."""


def _load_manager_settings(config: Path | None) -> ManagerSettings:
    try:
        settings, _ = load_manager_settings(config)
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1) from None
    return settings


def _build_manager(settings: ManagerSettings) -> LifecycleManager:
    runtime = DockerRuntime(timeout_s=settings.docker_timeout, network=settings.network)
    return LifecycleManager.from_settings(runtime, settings)


def _parse_subscription(
    *,
    api_key: str,
    room: str,
    sender: str,
    target: str,
    poll_interval: float,
) -> Subscription:
    try:
        request = SubscriptionRequest.model_validate(
            {
                "api_key": api_key,
                "room_id": room,
                "sender": sender,
                "target_url": target,
                "poll_interval": poll_interval,
            }
        )
    except ValidationError as e:
        typer.echo(f"Invalid subscription: {e}", err=True)
        raise typer.Exit(code=2) from None
    return request.to_subscription()


def _run_manager_call(func: Any, *args: Any) -> Any:
    try:
        return anyio.run(func, *args)
    except RuntimeUnavailable as e:
        typer.echo(f"runtime error: {e}", err=True)
        raise typer.Exit(code=1) from None


def _emit(payload: dict[str, Any]) -> None:
    typer.echo(json.dumps(payload, sort_keys=True))


ApiKeyOption = typer.Option(..., "--api-key", envvar="ROOMRELAY_API_KEY", help="Chat API key.")
RoomOption = typer.Option(..., "--room", help="Chat room id or name.")
SenderOption = typer.Option(..., "--sender", help="Sender name used for replies.")
TargetOption = typer.Option(..., "--target", help="Webhook URL.")
IntervalOption = typer.Option(
    DEFAULT_POLL_INTERVAL, "--poll-interval", help="Seconds between polls."
)
ConfigOption = typer.Option(None, "--config", help="Manager TOML config file.")


@app.command()
def worker(
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Verbose logging."),
) -> None:
    """Run one relay loop configured from ROOMRELAY_* environment variables."""
    setup_logging(debug=debug)
    try:
        settings = load_worker_settings()
    except ConfigError as e:
        typer.echo(str(e), err=True)
        raise typer.Exit(code=1) from None
    try:
        anyio.run(run_worker, settings)
    except RetryExhausted as exc:
        logger.error(
            "worker.fatal",
            attempts=exc.attempts,
            error=str(exc.last_error),
            error_type=exc.last_error.__class__.__name__,
        )
        raise typer.Exit(code=1) from None
    except Exception as exc:
        logger.exception(
            "worker.crashed", error=str(exc), error_type=exc.__class__.__name__
        )
        raise typer.Exit(code=1) from None


@app.command()
def serve(
    config: Path | None = ConfigOption,
    host: str | None = typer.Option(None, "--host", help="Bind address."),
    port: int | None = typer.Option(None, "--port", help="Bind port."),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Verbose logging."),
) -> None:
    """Serve the subscription manager over HTTP."""
    import uvicorn

    from .server import create_app

    setup_logging(debug=debug)
    settings = _load_manager_settings(config)
    manager = _build_manager(settings)
    bind_host = host or settings.host
    bind_port = port or settings.port
    logger.info(
        "server.starting", host=bind_host, port=bind_port, image=settings.image
    )
    uvicorn.run(
        create_app(manager),
        host=bind_host,
        port=bind_port,
        log_level="debug" if debug else "info",
    )


@app.command()
def add(
    api_key: str = ApiKeyOption,
    room: str = RoomOption,
    sender: str = SenderOption,
    target: str = TargetOption,
    poll_interval: float = IntervalOption,
    config: Path | None = ConfigOption,
) -> None:
    """Start a worker for a subscription unless one is already running."""
    setup_logging()
    subscription = _parse_subscription(
        api_key=api_key,
        room=room,
        sender=sender,
        target=target,
        poll_interval=poll_interval,
    )
    manager = _build_manager(_load_manager_settings(config))
    _emit({"started": _run_manager_call(manager.start, subscription)})


@app.command()
def remove(
    api_key: str = ApiKeyOption,
    room: str = RoomOption,
    sender: str = SenderOption,
    target: str = TargetOption,
    poll_interval: float = IntervalOption,
    config: Path | None = ConfigOption,
) -> None:
    """Stop and delete the worker for a subscription."""
    setup_logging()
    subscription = _parse_subscription(
        api_key=api_key,
        room=room,
        sender=sender,
        target=target,
        poll_interval=poll_interval,
    )
    manager = _build_manager(_load_manager_settings(config))
    _emit({"stopped": _run_manager_call(manager.stop, subscription)})


@app.command()
def status(
    api_key: str = ApiKeyOption,
    room: str = RoomOption,
    sender: str = SenderOption,
    target: str = TargetOption,
    poll_interval: float = IntervalOption,
    config: Path | None = ConfigOption,
) -> None:
    """Report whether a subscription's worker is running."""
    setup_logging()
    subscription = _parse_subscription(
        api_key=api_key,
        room=room,
        sender=sender,
        target=target,
        poll_interval=poll_interval,
    )
    manager = _build_manager(_load_manager_settings(config))
    _emit({"running": _run_manager_call(manager.is_running, subscription)})


@app.command()
def logs(
    api_key: str = ApiKeyOption,
    room: str = RoomOption,
    sender: str = SenderOption,
    target: str = TargetOption,
    poll_interval: float = IntervalOption,
    config: Path | None = ConfigOption,
) -> None:
    """Print the tail of a subscription worker's output."""
    setup_logging()
    subscription = _parse_subscription(
        api_key=api_key,
        room=room,
        sender=sender,
        target=target,
        poll_interval=poll_interval,
    )
    manager = _build_manager(_load_manager_settings(config))
    output = _run_manager_call(manager.recent_logs, subscription)
    if output is None:
        typer.echo("no worker for this subscription", err=True)
        raise typer.Exit(code=1)
    typer.echo(output, nl=False)


@app.command("list")
def list_subscriptions(config: Path | None = ConfigOption) -> None:
    """List subscriptions with a live worker."""
    setup_logging()
    manager = _build_manager(_load_manager_settings(config))
    for subscription in _run_manager_call(manager.list_active):
        _emit(
            {
                "room_id": subscription.room_id,
                "sender": subscription.sender,
                "target_url": subscription.target_url,
                "poll_interval": subscription.poll_interval,
                "key_hint": mask_secret(subscription.api_key),
                "digest": subscription.digest(),
            }
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
