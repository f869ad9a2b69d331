"""Shared test fixtures and helpers for the test suite.

Controller tests launch short Python scripts through ``sys.executable`` in
place of the real KoboldCpp binary, and answer the child's status endpoint
with an ``httpx.MockTransport`` whose reported model the test controls.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from pathlib import Path
import sys
import textwrap
from typing import Any

import httpx
from loguru import logger
import pytest
import pytest_asyncio

from kobold_switcher.config import SwitcherConfig
from kobold_switcher.runner.controller import ProcessController
from kobold_switcher.runner.errors import WaitTimeoutError
from kobold_switcher.runner.sync import StatusSynchronizer
from kobold_switcher.runner.timers import wait_for

CHILD_PRELUDE = """\
import json
import signal
import sys
import time
from pathlib import Path

Path("argv.json").write_text(json.dumps(sys.argv[1:]))
"""

SERVE_FOREVER = """\
print("Loading model", flush=True)
print("some warning", file=sys.stderr, flush=True)
while True:
    time.sleep(0.05)
"""


class FakeChildStatus:
    """Stand-in for the child's ``/api/v1/model`` endpoint.

    ``model`` is the identifier reported in ``result``; ``None`` makes the
    endpoint refuse connections. When ``alive`` is set, the endpoint only
    answers while it returns True. A non-None ``payload`` is returned verbatim
    in place of the usual ``{"result": model}`` body.
    """

    def __init__(self, model: str | None = None) -> None:
        self.model = model
        self.alive: Callable[[], bool] | None = None
        self.payload: Any = None
        self.requests = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests += 1
        if self.model is None or (self.alive is not None and not self.alive()):
            raise httpx.ConnectError("connection refused", request=request)
        if self.payload is not None:
            return httpx.Response(200, json=self.payload)
        return httpx.Response(200, json={"result": self.model})

    def synchronizer(self) -> StatusSynchronizer:
        return StatusSynchronizer(
            "http://child.test/api/v1/model",
            timeout=1.0,
            transport=httpx.MockTransport(self.handler),
        )


async def eventually(check: Callable[[], bool], timeout: float = 5.0) -> None:
    """Wait until ``check()`` holds, failing the test after ``timeout``."""

    async def _predicate() -> bool:
        return check()

    try:
        await wait_for(_predicate, timeout, 0.02)
    except WaitTimeoutError:
        pytest.fail(f"condition not met within {timeout}s")


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def write_child(tmp_path: Path) -> Callable[[str], Path]:
    """Return a factory writing a stand-in child script with the given body."""

    counter = {"n": 0}

    def _write(body: str) -> Path:
        counter["n"] += 1
        script = tmp_path / f"fake_koboldcpp_{counter['n']}.py"
        script.write_text(CHILD_PRELUDE + textwrap.dedent(body), encoding="utf-8")
        return script

    return _write


@pytest.fixture
def make_config(
    models_dir: Path,
    write_child: Callable[[str], Path],
) -> Callable[..., SwitcherConfig]:
    """Flexible factory for ``SwitcherConfig`` instances running a fake child."""

    def _factory(*, child_body: str = SERVE_FOREVER, **overrides: Any) -> SwitcherConfig:
        values: dict[str, Any] = {
            "models_dir": models_dir,
            "binary_path": Path(sys.executable),
            "default_args": [str(write_child(child_body))],
            "no_log_file": True,
            "poll_interval": 0.05,
            "startup_timeout": 10.0,
            "stop_timeout": 5.0,
            "shutdown_timeout": 5.0,
        }
        values.update(overrides)
        return SwitcherConfig(**values)

    return _factory


@pytest_asyncio.fixture
async def make_controller(
    make_config: Callable[..., SwitcherConfig],
) -> AsyncIterator[Callable[..., ProcessController]]:
    """Factory for controllers wired to a ``FakeChildStatus``.

    With ``follow_process`` the fake only answers while the controller's child
    is running, like a real model server. Every controller is shut down after
    the test.
    """

    created: list[ProcessController] = []

    def _factory(
        fake: FakeChildStatus,
        *,
        follow_process: bool = True,
        **config_overrides: Any,
    ) -> ProcessController:
        controller = ProcessController(
            make_config(**config_overrides),
            synchronizer=fake.synchronizer(),
            cpu_count=4,
        )
        if follow_process:
            fake.alive = controller.is_running
        created.append(controller)
        return controller

    yield _factory

    for controller in created:
        await controller.shutdown()


@pytest.fixture
def log_records() -> Any:
    """Capture loguru records emitted during the test."""

    records: list[dict[str, Any]] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def fake_child() -> FakeChildStatus:
    return FakeChildStatus()


@pytest.fixture(name="eventually")
def eventually_fixture() -> Callable[..., Awaitable[None]]:
    return eventually
