"""Switcher configuration dataclass and JSON loader.

The configuration is read once at startup and passed explicitly into the
controller and the FastAPI app factory. A missing configuration file is
replaced with a template so operators have something to edit.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import json
import os
from pathlib import Path
import sys
from typing import Any

from loguru import logger

from .const import (
    CHILD_BINARY_NAMES,
    CONFIG_PATH_ENV_VAR,
    DEFAULT_BIND_HOST,
    DEFAULT_CHILD_ARGS,
    DEFAULT_CONFIG_PATH,
    DEFAULT_LOG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PORT,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_STARTUP_TIMEOUT,
    DEFAULT_STATUS_REQUEST_TIMEOUT,
    DEFAULT_STATUS_URL,
    DEFAULT_STOP_TIMEOUT,
    MAX_CONTEXT_SIZE,
    MIN_CONTEXT_SIZE,
)

PORT_MIN = 1
PORT_MAX = 65535

_TRUE_BOOL_LITERALS = {"1", "true", "yes", "on"}
_FALSE_BOOL_LITERALS = {"0", "false", "no", "off"}


class ConfigurationError(RuntimeError):
    """Raised when the switcher configuration file is missing or invalid."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Configuration error: {message}")


@dataclass(slots=True)
class SwitcherConfig:
    """Validated switcher configuration.

    ``models_dir`` doubles as the working directory of the child process and
    as the base for relative model and binary references.
    """

    models_dir: Path
    binary_path: Path | None = None
    default_args: list[str] = field(default_factory=lambda: list(DEFAULT_CHILD_ARGS))
    host: str = DEFAULT_BIND_HOST
    port: int = DEFAULT_PORT
    log_level: str = DEFAULT_LOG_LEVEL
    log_file: str | None = DEFAULT_LOG_FILE
    no_log_file: bool = False
    status_url: str = DEFAULT_STATUS_URL
    status_request_timeout: float = DEFAULT_STATUS_REQUEST_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    startup_timeout: float = DEFAULT_STARTUP_TIMEOUT
    stop_timeout: float = DEFAULT_STOP_TIMEOUT
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    context_size_min: int = MIN_CONTEXT_SIZE
    context_size_max: int = MAX_CONTEXT_SIZE
    source_path: Path | None = None

    def __post_init__(self) -> None:
        """Normalize values and reject configurations the controller cannot use."""

        self.models_dir = Path(self.models_dir).expanduser() if self.models_dir else Path()
        if not self.models_dir.is_absolute():
            raise ConfigurationError("models_dir must be an absolute path")

        if self.binary_path is not None:
            self.binary_path = Path(self.binary_path).expanduser()

        normalized: list[str] = []
        for value in self.default_args:
            token = str(value).strip()
            if not token:
                continue
            if any(ch.isspace() for ch in token):
                raise ConfigurationError(
                    f"default_args entry {token!r} contains whitespace; split it into separate entries",
                )
            normalized.append(token)
        self.default_args = normalized

        self.port = _coerce_int(self.port, field_name="port")
        if not (PORT_MIN <= self.port <= PORT_MAX):
            raise ConfigurationError(f"port must be between {PORT_MIN} and {PORT_MAX}")

        self.log_level = str(self.log_level).upper()
        self.no_log_file = _coerce_bool(self.no_log_file, field_name="no_log_file")

        for name in (
            "status_request_timeout",
            "poll_interval",
            "startup_timeout",
            "stop_timeout",
            "shutdown_timeout",
        ):
            setattr(self, name, _coerce_positive_float(getattr(self, name), field_name=name))

        self.context_size_min = _coerce_int(self.context_size_min, field_name="context_size_min")
        self.context_size_max = _coerce_int(self.context_size_max, field_name="context_size_max")
        if not (0 < self.context_size_min <= self.context_size_max):
            raise ConfigurationError(
                "context_size_min must be positive and not greater than context_size_max",
            )

    @property
    def context_size_range(self) -> tuple[int, int]:
        """Return the inclusive ``(min, max)`` context size range."""

        return self.context_size_min, self.context_size_max

    def resolve_binary(self) -> Path | None:
        """Return the child executable path, or ``None`` for unsupported platforms."""

        binary = self.binary_path
        if binary is None:
            name = CHILD_BINARY_NAMES.get(sys.platform)
            if name is None:
                return None
            binary = Path(name)
        if not binary.is_absolute():
            binary = self.models_dir / binary
        return binary


def _coerce_bool(value: Any, *, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_BOOL_LITERALS:
            return True
        if normalized in _FALSE_BOOL_LITERALS:
            return False
    raise ConfigurationError(f"{field_name} must be a boolean value (got {value!r})")


def _coerce_int(value: Any, *, field_name: str) -> int:
    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name} must be an integer value (got boolean)")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field_name} must be an integer value") from exc


def _coerce_positive_float(value: Any, *, field_name: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"{field_name} must be a number (got boolean)")
    try:
        candidate = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field_name} must be a number") from exc
    if candidate <= 0:
        raise ConfigurationError(f"{field_name} must be positive")
    return candidate


def config_template() -> dict[str, Any]:
    """Return the payload written when no configuration file exists yet."""

    return {
        "models_dir": "",
        "binary_path": None,
        "default_args": list(DEFAULT_CHILD_ARGS),
        "host": DEFAULT_BIND_HOST,
        "port": DEFAULT_PORT,
        "log_level": DEFAULT_LOG_LEVEL,
    }


def resolve_config_path(config_path: Path | str | None = None) -> Path:
    """Return the config path from the argument, the environment or the default."""

    if config_path is None:
        config_path = os.environ.get(CONFIG_PATH_ENV_VAR) or DEFAULT_CONFIG_PATH
    return Path(config_path).expanduser()


def _read_config(path: Path, *, create_missing: bool) -> dict[str, Any]:
    """Read the JSON config, writing a template once when the file is missing."""

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        if not create_missing:
            raise ConfigurationError(f"config file not found: {path}") from exc
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(config_template(), indent=2), encoding="utf-8")
        logger.warning(f"Configuration missing. Configuration template created at {path}")
        return _read_config(path, create_missing=False)

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"failed to parse '{path}': {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError("config root must be a JSON object")
    return data


def load_config(config_path: Path | str | None = None) -> SwitcherConfig:
    """Load and validate the switcher configuration.

    Parameters
    ----------
    config_path : Path, str, or None, optional
        Location of the JSON file. Falls back to ``$KOBOLD_SWITCHER_CONFIG``
        and then to ``~/.kobold-switcher/config.json``.

    Returns
    -------
    SwitcherConfig
        The validated configuration.

    Raises
    ------
    ConfigurationError
        If the file cannot be parsed or holds invalid values.
    """

    path = resolve_config_path(config_path)
    data = _read_config(path, create_missing=True)

    known = {f.name for f in fields(SwitcherConfig)} - {"source_path"}
    unknown = sorted(set(data) - known)
    if unknown:
        logger.warning(f"Ignoring unknown config keys in {path}: {', '.join(unknown)}")

    payload = {key: value for key, value in data.items() if key in known and value is not None}
    if "default_args" in payload and not isinstance(payload["default_args"], list):
        raise ConfigurationError("default_args must be a list of strings")

    try:
        config = SwitcherConfig(**payload, source_path=path)
    except TypeError as exc:
        raise ConfigurationError(str(exc)) from exc

    logger.info(f"Config loaded from {path}")
    return config
