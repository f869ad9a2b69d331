"""Process controller that owns the child model server and its lifecycle state.

All state changes go through ``ProcessController._transition`` and happen on
the event loop thread. Every check-then-transition sequence runs without an
intervening ``await``, so two lifecycle operations can never interleave
between the conflict check and the state change.
"""

from __future__ import annotations

import asyncio
from asyncio import subprocess as aio_subprocess
from collections.abc import Coroutine, Iterable
from contextlib import suppress
from typing import Any

from loguru import logger

from ..config import SwitcherConfig
from .args import RunArgs, build_args
from .errors import (
    BinaryNotFoundError,
    ChildUnreachableError,
    InvalidArgumentError,
    ModelStateError,
    ProcessFaultError,
    UnexpectedStatusPayloadError,
    WaitTimeoutError,
)
from .output import OutputLineLogger
from .status import (
    CHANGING_STATES,
    MODEL_STATES,
    UNREACHABLE_OK_STATES,
    ModelState,
    ModelStatus,
    describe_exit,
)
from .sync import StatusSynchronizer
from .timers import wait_for


class ProcessController:
    """Spawn, stop and observe a single child model server."""

    def __init__(
        self,
        config: SwitcherConfig,
        *,
        synchronizer: StatusSynchronizer | None = None,
        cpu_count: int | None = None,
    ) -> None:
        """Initialize the controller.

        Parameters
        ----------
        config : SwitcherConfig
            Validated switcher configuration.
        synchronizer : StatusSynchronizer, optional
            Client for the child's status endpoint. Built from ``config`` when
            omitted.
        cpu_count : int, optional
            Thread count used when a start request does not specify one.
        """

        self.config = config
        self._synchronizer = synchronizer or StatusSynchronizer(
            config.status_url,
            timeout=config.status_request_timeout,
        )
        self._cpu_count = cpu_count
        self._status = ModelStatus()
        self._process: aio_subprocess.Process | None = None
        # Set while the controller itself is terminating the child.
        self._stop_requested = False
        self._reloading = False
        self._startup_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def status(self) -> ModelStatus:
        """Return the last known status without contacting the child."""

        return self._status.copy()

    @property
    def pid(self) -> int | None:
        """Return the PID of the owned child, if one is running."""

        return self._process.pid if self._process else None

    @property
    def graceful_shutdown(self) -> bool:
        """Return True while a controller-requested termination is in progress."""

        return self._stop_requested

    def is_running(self) -> bool:
        """Return True when the controller owns a child that has not exited."""

        return self._process is not None and self._process.returncode is None

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(self, run_args: RunArgs) -> None:
        """Start the child with ``run_args``, reloading a running model.

        Returns once the new process is spawned; the state is ``loading`` and
        moves on as the startup monitor observes the child.

        Raises
        ------
        InvalidArgumentError
            If ``run_args`` cannot be turned into a command line.
        BinaryNotFoundError
            If the configured executable is missing.
        ModelStateError
            If the model is loading, stopping, being reloaded or not owned.
        WaitTimeoutError
            If the previous model did not stop within ``stop_timeout``. The
            old child is killed before the error is raised.
        ProcessFaultError
            If the operating system refused to spawn the child.
        """

        command = self._build_command(run_args)
        await self.sync()
        self._ensure_can_start()

        state = self._status.state
        if state == "online":
            await self._reload()
        elif state == "failed" and self.is_running():
            await self._replace_failed()

        await self._spawn(command, run_args.model_name)

    async def stop(self) -> None:
        """Request graceful termination of the owned child.

        Does not wait for the exit; use :meth:`wait_for_state` for that. A child
        still running ``stop_timeout`` seconds later is killed.

        Raises
        ------
        ModelStateError
            If the model is changing state or runs independently.
        """

        await self.sync()
        state = self._status.state
        if self._reloading or state in CHANGING_STATES:
            raise ModelStateError(f"Model is {state}. Stop impossible")
        if state == "offline" or (state == "failed" and not self.is_running()):
            return
        if self._status.independent:
            raise ModelStateError("Running model is not managed by controller")
        if not self.is_running():
            raise ModelStateError("No managed model process to stop")
        self._request_stop()

    async def sync(self) -> ModelStatus:
        """Reconcile the tracked state with the child's status endpoint."""

        try:
            reported = await self._synchronizer.fetch_loaded_model()
        except ChildUnreachableError as exc:
            self._status.sync_error = None
            self._on_unreachable(exc)
        except UnexpectedStatusPayloadError as exc:
            logger.warning(f"Ignoring status response from model server: {exc}")
            self._status.sync_error = f"unexpected status response: {exc}"
        else:
            self._status.sync_error = None
            self._on_reported(reported)
        return self.status

    async def get_model_status(self) -> ModelStatus:
        """Return the current status after one synchronization pass."""

        return await self.sync()

    async def wait_for_state(self, states: Iterable[ModelState], timeout: float) -> ModelStatus:
        """Poll until the model reaches one of ``states``.

        Raises
        ------
        InvalidArgumentError
            If ``states`` names an unknown state.
        WaitTimeoutError
            If no target state was observed within ``timeout`` seconds. The
            state machine is left as last observed.
        """

        targets = frozenset(states)
        unknown = targets.difference(MODEL_STATES)
        if unknown:
            raise InvalidArgumentError(f"unknown model states: {', '.join(sorted(unknown))}")

        observed = self.status

        async def _reached() -> bool:
            nonlocal observed
            observed = await self.get_model_status()
            return observed.state in targets

        try:
            await wait_for(_reached, timeout, self.config.poll_interval)
        except WaitTimeoutError as exc:
            raise WaitTimeoutError(
                f"Model did not reach {', '.join(sorted(targets))} within {timeout:g}s "
                f"(last state: {observed.state})",
            ) from exc
        return observed

    async def shutdown(self) -> None:
        """Terminate the owned child without lifecycle checks.

        Used when the hosting process exits. Kills the child if it ignores the
        termination request for ``shutdown_timeout`` seconds.
        """

        if self._startup_task is not None:
            self._startup_task.cancel()

        process = self._process
        if process is not None and process.returncode is None:
            self._stop_requested = True
            logger.info(f"Shutting down model server (pid={process.pid})")
            self._signal_terminate(process)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.config.shutdown_timeout)
            except TimeoutError:
                logger.warning(
                    f"Model server did not exit within {self.config.shutdown_timeout:g}s; killing",
                )
                with suppress(ProcessLookupError):
                    process.kill()
                await process.wait()

        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=self.config.shutdown_timeout)
            for task in pending:
                task.cancel()
        await self._synchronizer.aclose()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------

    def _build_command(self, run_args: RunArgs) -> list[str]:
        tokens = build_args(
            run_args,
            models_dir=self.config.models_dir,
            context_size_range=self.config.context_size_range,
            cpu_count=self._cpu_count,
        )
        binary = self.config.resolve_binary()
        if binary is None or not binary.is_file():
            raise BinaryNotFoundError(f"Model server binary missing: {binary}")
        logger.info(f"Binary will be started at {binary} with flags {tokens}")
        return [str(binary), *self.config.default_args, *tokens]

    def _ensure_can_start(self) -> None:
        state = self._status.state
        if self._reloading:
            raise ModelStateError("Model is being reloaded. Start impossible")
        if state in CHANGING_STATES:
            raise ModelStateError(f"Model is {state}. Start impossible")
        if state == "online" and self._status.independent:
            raise ModelStateError("Running model is not managed by controller")

    async def _reload(self) -> None:
        logger.info(f"Reloading: stopping model '{self._status.name}' first")
        process = self._process
        self._reloading = True
        try:
            self._request_stop()
            await self.wait_for_state(("offline", "failed"), self.config.stop_timeout)
        except WaitTimeoutError:
            if process is not None and process.returncode is None:
                logger.warning(f"Model server (pid={process.pid}) ignored termination; killing")
                with suppress(ProcessLookupError):
                    process.kill()
            raise
        finally:
            self._reloading = False

    async def _replace_failed(self) -> None:
        process = self._process
        if process is None:
            return
        logger.info(f"Terminating failed model server (pid={process.pid}) before restart")
        self._reloading = True
        try:
            self._stop_requested = True
            self._signal_terminate(process)
            try:
                returncode = await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
            except TimeoutError:
                logger.warning(f"Model server (pid={process.pid}) ignored termination; killing")
                with suppress(ProcessLookupError):
                    process.kill()
                returncode = await process.wait()
            # The exit watcher may not have run yet; settle before respawning.
            self._handle_exit(process, returncode)
        finally:
            self._reloading = False

    async def _spawn(self, command: list[str], name: str) -> None:
        self._stop_requested = False
        previous = self._status.state
        self._status = ModelStatus(state="loading", name=name)
        logger.info(f"Model state {previous} -> loading ('{name}')")

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.config.models_dir),
                stdin=aio_subprocess.DEVNULL,
                stdout=aio_subprocess.PIPE,
                stderr=aio_subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            self._transition("failed", error=str(exc))
            raise ProcessFaultError(f"Failed to spawn model server: {exc}") from exc

        self._process = process
        logger.info(f"Started model server (pid={process.pid})")

        if process.stdout is not None:
            self._track(OutputLineLogger("INFO").drain(process.stdout), "stdout")
        if process.stderr is not None:
            self._track(OutputLineLogger("ERROR").drain(process.stderr), "stderr")
        self._track(self._watch(process), "exit-watcher")
        self._startup_task = self._track(self._monitor_startup(process), "startup-monitor")

    def _request_stop(self) -> None:
        process = self._process
        if process is None:
            raise ModelStateError("No managed model process to stop")
        self._stop_requested = True
        self._transition("stopping")
        self._signal_terminate(process)
        self._track(self._kill_after_stop_timeout(process), "stop-escalation")

    @staticmethod
    def _signal_terminate(process: aio_subprocess.Process) -> None:
        with suppress(ProcessLookupError):
            process.terminate()

    async def _kill_after_stop_timeout(self, process: aio_subprocess.Process) -> None:
        """Kill ``process`` if it outlives a termination request by ``stop_timeout``.

        The exit watcher records the resulting exit.
        """

        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.stop_timeout)
        except TimeoutError:
            if process is self._process and process.returncode is None:
                logger.warning(
                    f"Model server (pid={process.pid}) did not exit within "
                    f"{self.config.stop_timeout:g}s; killing",
                )
                with suppress(ProcessLookupError):
                    process.kill()

    async def _watch(self, process: aio_subprocess.Process) -> None:
        returncode = await process.wait()
        self._handle_exit(process, returncode)

    def _handle_exit(self, process: aio_subprocess.Process, returncode: int) -> None:
        if process is not self._process:
            logger.debug(f"Ignoring exit of replaced model server (pid={process.pid})")
            return

        reason = describe_exit(returncode)
        if self._stop_requested:
            logger.info(f"Model server (pid={process.pid}) shut down ({reason})")
            # A startup timeout already recorded the failure.
            if self._status.state != "failed":
                self._transition("offline")
        else:
            logger.warning(f"Model server (pid={process.pid}) exited with {reason}")
            self._transition("failed", error=reason)

        self._process = None
        self._stop_requested = False
        if self._startup_task is not None:
            self._startup_task.cancel()
            self._startup_task = None

    async def _monitor_startup(self, process: aio_subprocess.Process) -> None:
        async def _left_loading() -> bool:
            if self._process is not process:
                return True
            await self.sync()
            return self._status.state != "loading"

        try:
            await wait_for(_left_loading, self.config.startup_timeout, self.config.poll_interval)
        except WaitTimeoutError:
            if self._process is process and self._status.state == "loading":
                self._transition(
                    "failed",
                    error=f"model did not become ready within {self.config.startup_timeout:g}s",
                )
                self._stop_requested = True
                self._signal_terminate(process)
                self._track(self._kill_after_stop_timeout(process), "stop-escalation")

    # ------------------------------------------------------------------
    # Synchronization outcomes
    # ------------------------------------------------------------------

    def _on_unreachable(self, exc: ChildUnreachableError) -> None:
        state = self._status.state
        if state in UNREACHABLE_OK_STATES:
            logger.debug(f"Model server not reachable while {state}: {exc}")
            return
        logger.warning(f"Failed to fetch model from model server: {exc}")
        self._transition("failed", error="model server is unexpectedly down")

    def _on_reported(self, name: str) -> None:
        # The child keeps answering until the termination completes.
        if self._status.state == "stopping":
            return
        if self._status.name != name:
            logger.warning(f"Unexpected model name, expected '{self._status.name}' got '{name}'")
            self._status.name = name
            self._status.independent = True
        # While loading, the handle may not be assigned yet.
        elif (
            self._status.state != "loading"
            and not self.is_running()
            and not self._status.independent
        ):
            logger.warning(f"Model '{name}' is served by a process this controller did not start")
            self._status.independent = True
        if self._status.state != "online":
            self._transition("online")

    def _transition(self, state: ModelState, *, error: str | None = None) -> None:
        previous = self._status.state
        if error is not None:
            self._status.error_message = error
        self._status.state = state
        if previous != state:
            detail = f" ({error})" if error else ""
            logger.info(f"Model state {previous} -> {state}{detail}")

    def _track(self, coro: Coroutine[Any, Any, None], label: str) -> asyncio.Task[None]:
        task = asyncio.create_task(coro, name=f"model-server-{label}")
        self._tasks.add(task)

        def _on_done(done: asyncio.Task[None]) -> None:
            self._tasks.discard(done)
            if done.cancelled():
                return
            exc = done.exception()
            if exc is not None:
                logger.opt(exception=exc).error(f"Model server {label} task failed")

        task.add_done_callback(_on_done)
        return task
