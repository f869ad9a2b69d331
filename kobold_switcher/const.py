"""Default values shared across the switcher."""

from __future__ import annotations

from pathlib import Path

DEFAULT_BIND_HOST = "127.0.0.1"
DEFAULT_PORT = 5050
DEFAULT_LOG_LEVEL = "INFO"
DEFAULT_LOG_FILE = "logs/app.log"

DEFAULT_CONFIG_PATH = Path("~/.kobold-switcher/config.json")
CONFIG_PATH_ENV_VAR = "KOBOLD_SWITCHER_CONFIG"

# The child exposes its KoboldAI-compatible API on a fixed loopback port.
DEFAULT_STATUS_URL = "http://127.0.0.1:5001/api/v1/model"
DEFAULT_STATUS_REQUEST_TIMEOUT = 2.0

DEFAULT_POLL_INTERVAL = 0.2
DEFAULT_STARTUP_TIMEOUT = 120.0
DEFAULT_STOP_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_TIMEOUT = 10.0

MIN_CONTEXT_SIZE = 256
MAX_CONTEXT_SIZE = 262144

DEFAULT_CHILD_ARGS: tuple[str, ...] = (
    "--quiet",
    "--flashattention",
    "--usemlock",
    "--usecublas",
    "all",
)

# Binary names shipped in KoboldCpp releases, keyed by ``sys.platform``.
CHILD_BINARY_NAMES: dict[str, str] = {
    "win32": "koboldcpp_cu12.exe",
    "linux": "koboldcpp-linux-x64-cuda1210",
    "darwin": "koboldcpp-mac-arm64",
}

CHILD_LOG_LABEL = "[KoboldCpp]"
CHILD_LOG_EXTRA = "koboldcpp"

KNOWN_EXIT_CODES: dict[int, str] = {
    3: "failed to load model",
}
