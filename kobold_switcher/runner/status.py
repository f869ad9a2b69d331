"""Lifecycle states tracked by the process controller."""

from __future__ import annotations

from dataclasses import dataclass
import signal
from typing import Any, Literal

from ..const import KNOWN_EXIT_CODES

ModelState = Literal["offline", "loading", "online", "stopping", "failed"]

MODEL_STATES: tuple[ModelState, ...] = ("offline", "loading", "online", "stopping", "failed")

# Start/stop requests arriving in these states are conflicts.
CHANGING_STATES: frozenset[ModelState] = frozenset({"loading", "stopping"})

# States in which an unreachable status endpoint is expected.
UNREACHABLE_OK_STATES: frozenset[ModelState] = frozenset(
    {"offline", "loading", "stopping", "failed"}
)

SETTLED_STATES: frozenset[ModelState] = frozenset({"offline", "online", "failed"})


@dataclass(slots=True)
class ModelStatus:
    """Snapshot of the supervised model.

    ``independent`` is set once the child reports a model the controller did
    not request, meaning another actor owns the running process.
    ``sync_error`` holds the last synchronization fault and is cleared by the
    next successful pass.
    """

    state: ModelState = "offline"
    name: str | None = None
    error_message: str | None = None
    independent: bool = False
    sync_error: str | None = None

    def copy(self) -> ModelStatus:
        """Return a detached copy safe to hand to callers."""

        return ModelStatus(
            state=self.state,
            name=self.name,
            error_message=self.error_message,
            independent=self.independent,
            sync_error=self.sync_error,
        )

    def as_payload(self) -> dict[str, Any]:
        """Return the REST representation of the status."""

        payload: dict[str, Any] = {"status": self.state}
        if self.name is not None:
            payload["model"] = self.name
        if self.state == "failed" and self.error_message is not None:
            payload["error"] = self.error_message
        elif self.sync_error is not None:
            payload["error"] = self.sync_error
        return payload


def describe_exit(returncode: int) -> str:
    """Return a human-readable reason for a child exit status.

    Negative return codes mean the child was killed by a signal.
    """

    if returncode < 0:
        try:
            return signal.Signals(-returncode).name
        except ValueError:
            return f"signal {-returncode}"
    return KNOWN_EXIT_CODES.get(returncode, str(returncode))
