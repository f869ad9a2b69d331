"""Command-line interface for the KoboldCpp switcher.

``launch`` runs the control server in the foreground; ``status``, ``start``
and ``stop`` talk to an already running switcher over HTTP.
"""

from __future__ import annotations

import asyncio
import dataclasses
import sys
import time
from typing import Any, Literal

import click
import httpx
from loguru import logger

from .config import ConfigurationError, SwitcherConfig, load_config
from .const import DEFAULT_BIND_HOST, DEFAULT_LOG_LEVEL, DEFAULT_PORT
from .runner.status import SETTLED_STATES
from .server import start as start_server
from .version import __version__

CLIENT_TIMEOUT = 10.0
WAIT_POLL_INTERVAL = 0.5


class UpperChoice(click.Choice[str]):
    """Case-insensitive choice type that returns the canonical uppercase value."""

    def normalize_choice(self, choice: str | None, ctx: click.Context | None) -> str | None:  # type: ignore[override]
        if choice is None:
            return None
        upperchoice = choice.upper()
        for opt in self.choices:
            if opt.upper() == upperchoice:
                return opt
        self.fail(
            f"Invalid choice: {choice}. (choose from {', '.join(self.choices)})",
            param=None,
            ctx=ctx,
        )
        return None


# Basic console logging until ``launch`` configures the server sinks.
logger.remove()
logger.add(
    sys.stderr,
    format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>",
    colorize=True,
    level="INFO",
)


_FLASH_STYLES: dict[str, tuple[str, str]] = {
    "info": ("[info]", "cyan"),
    "success": ("[ok]", "green"),
    "warning": ("[warn]", "yellow"),
    "error": ("[err]", "red"),
}

_STATE_TONES: dict[str, Literal["info", "success", "warning", "error"]] = {
    "online": "success",
    "failed": "error",
    "loading": "warning",
    "stopping": "warning",
}


def _flash(message: str, tone: Literal["info", "success", "warning", "error"] = "info") -> None:
    """Emit a short, colorized status line."""
    prefix, color = _FLASH_STYLES.get(tone, _FLASH_STYLES["info"])
    click.echo(click.style(f"{prefix} {message}", fg=color))


@click.group()
@click.version_option(version=__version__, message="%(prog)s %(version)s")
def cli() -> None:
    """Supervise a local KoboldCpp model server."""


def _load_config_or_fail(config_path: str | None) -> SwitcherConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command(help="Run the switcher control server in the foreground")
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False),
    help="Path to the JSON config (default: $KOBOLD_SWITCHER_CONFIG or ~/.kobold-switcher/config.json).",
)
@click.option("--host", default=None, help="Host to bind; overrides the config file.")
@click.option("--port", default=None, type=int, help="Port to bind; overrides the config file.")
@click.option(
    "--log-level",
    default=None,
    type=UpperChoice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    help=f"Set the logging level. Default is {DEFAULT_LOG_LEVEL}.",
)
@click.option(
    "--log-file",
    default=None,
    type=str,
    help="Path to log file. If not specified, logs will be written to 'logs/app.log' by default.",
)
@click.option(
    "--no-log-file",
    is_flag=True,
    help="Disable file logging entirely. Only console output will be shown.",
)
def launch(
    config_path: str | None,
    host: str | None,
    port: int | None,
    log_level: str | None,
    log_file: str | None,
    no_log_file: bool,
) -> None:
    """Load the configuration, apply overrides and serve until interrupted."""
    config = _load_config_or_fail(config_path)

    overrides: dict[str, Any] = {
        "host": host,
        "port": port,
        "log_level": log_level,
        "log_file": log_file,
    }
    changes = {key: value for key, value in overrides.items() if value is not None}
    if no_log_file:
        changes["no_log_file"] = True
    if changes:
        try:
            config = dataclasses.replace(config, **changes)
        except ConfigurationError as exc:
            raise click.ClickException(str(exc)) from exc

    asyncio.run(start_server(config))


def _resolve_base_url(url: str | None, config_path: str | None) -> str:
    """Return the switcher URL from ``--url``, the config file or the defaults."""
    if url:
        return url.rstrip("/")
    if config_path:
        config = _load_config_or_fail(config_path)
        host, port = config.host, config.port
    else:
        host, port = DEFAULT_BIND_HOST, DEFAULT_PORT
    if host in {"0.0.0.0", "::"}:
        host = "127.0.0.1"
    return f"http://{host}:{port}"


def _call_switcher_api(
    base_url: str,
    method: str,
    path: str,
    *,
    json: object | None = None,
    timeout: float = CLIENT_TIMEOUT,
) -> dict[str, Any] | None:
    """Call the switcher HTTP API and return the parsed JSON body, if any.

    Raises
    ------
    click.ClickException
        On connection failures and non-2xx responses.
    """
    url = f"{base_url}{path}"
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.request(method, url, json=json)
    except httpx.HTTPError as exc:
        raise click.ClickException(f"Failed to contact switcher at {base_url}: {exc}") from exc

    if resp.status_code >= 400:
        try:
            payload: Any = resp.json()
        except ValueError:
            payload = resp.text
        message: Any = payload
        if isinstance(payload, dict):
            if "error" in payload:
                message = payload["error"]
            elif isinstance(payload.get("errors"), list):
                message = "; ".join(str(item) for item in payload["errors"])
        raise click.ClickException(f"Switcher responded {resp.status_code}: {message}")

    if not resp.content:
        return None
    try:
        payload = resp.json()
    except ValueError:
        return {"raw": resp.text}
    return payload if isinstance(payload, dict) else {"raw": resp.text}


def _print_status(payload: dict[str, Any]) -> None:
    state = str(payload.get("status", "unknown"))
    line = f"status: {state}"
    if payload.get("model"):
        line += f" (model: {payload['model']})"
    _flash(line, _STATE_TONES.get(state, "info"))
    if payload.get("error"):
        _flash(f"error: {payload['error']}", "error")


def _wait_until_settled(base_url: str, timeout: float) -> dict[str, Any]:
    """Poll ``GET /model`` until the state is offline, online or failed."""
    deadline = time.monotonic() + timeout
    while True:
        payload = _call_switcher_api(base_url, "GET", "/model") or {}
        if payload.get("status") in SETTLED_STATES:
            return payload
        if time.monotonic() >= deadline:
            raise click.ClickException(
                f"Model still {payload.get('status', 'unknown')} after {timeout:g}s",
            )
        time.sleep(WAIT_POLL_INTERVAL)


def _parse_tensor_split(
    _ctx: click.Context,
    _param: click.Parameter,
    value: str | None,
) -> list[float] | None:
    if value is None:
        return None
    try:
        return [float(part) for part in value.split(",") if part.strip()]
    except ValueError as exc:
        raise click.BadParameter("expected comma-separated numbers, e.g. 0.5,0.5") from exc


_url_option = click.option(
    "--url",
    default=None,
    envvar="KOBOLD_SWITCHER_URL",
    help="Base URL of a running switcher (default: derived from the config or http://127.0.0.1:5050).",
)
_config_option = click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(dir_okay=False, exists=True),
    help="Config file used to derive the switcher URL.",
)


@cli.command(help="Show the state of the model server")
@_url_option
@_config_option
def status(url: str | None, config_path: str | None) -> None:
    base_url = _resolve_base_url(url, config_path)
    _print_status(_call_switcher_api(base_url, "GET", "/model") or {})


@cli.command(help="Start MODEL, replacing the running one")
@click.argument("model")
@click.option("--context-size", type=int, default=None, help="Context size in tokens.")
@click.option("--gpu-layers", type=int, default=None, help="Layers to offload to the GPU (-1 for all).")
@click.option("--threads", type=int, default=None, help="CPU threads (default: all cores).")
@click.option(
    "--tensor-split",
    default=None,
    callback=_parse_tensor_split,
    help="Comma-separated ratios for splitting the model across GPUs.",
)
@click.option("--wait", type=float, default=None, help="Seconds to wait for the model to settle.")
@_url_option
@_config_option
def start(
    model: str,
    context_size: int | None,
    gpu_layers: int | None,
    threads: int | None,
    tensor_split: list[float] | None,
    wait: float | None,
    url: str | None,
    config_path: str | None,
) -> None:
    base_url = _resolve_base_url(url, config_path)
    body: dict[str, Any] = {"model": model}
    optional = {
        "contextSize": context_size,
        "gpuLayers": gpu_layers,
        "threads": threads,
        "tensorSplit": tensor_split,
    }
    body.update({key: value for key, value in optional.items() if value is not None})

    _call_switcher_api(base_url, "PUT", "/model", json=body)
    _flash(f"Start of '{model}' accepted", "success")

    if wait is not None:
        payload = _wait_until_settled(base_url, wait)
        _print_status(payload)
        if payload.get("status") != "online":
            raise click.ClickException(f"Model did not come online: {payload.get('error', payload.get('status'))}")


@cli.command(help="Stop the running model")
@click.option("--wait", type=float, default=None, help="Seconds to wait for the model to settle.")
@_url_option
@_config_option
def stop(wait: float | None, url: str | None, config_path: str | None) -> None:
    base_url = _resolve_base_url(url, config_path)
    _call_switcher_api(base_url, "DELETE", "/model")
    _flash("Stop requested", "success")

    if wait is not None:
        _print_status(_wait_until_settled(base_url, wait))
