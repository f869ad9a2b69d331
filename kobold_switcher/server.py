"""FastAPI application factory, logging setup and uvicorn configuration."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager, suppress
from http import HTTPStatus
import os
from pathlib import Path
import sys
from typing import Any, cast

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
import uvicorn

from .api.routes import router
from .config import SwitcherConfig
from .const import CHILD_LOG_EXTRA, DEFAULT_LOG_FILE
from .middleware import RequestTrackingMiddleware
from .runner.controller import ProcessController
from .runner.errors import ControllerError, InvalidArgumentError
from .version import __version__


def configure_logging(
    log_file: str | None = None,
    *,
    no_log_file: bool = False,
    log_level: str = "INFO",
) -> None:
    """Set up loguru handlers used by the server.

    Replaces the default loguru handler with a colorized console handler on
    stderr. Unless ``no_log_file`` is set, a rotating file handler is added
    as well.

    Parameters
    ----------
    log_file : str, optional
        Path of the log file. Defaults to ``logs/app.log``.
    no_log_file : bool, default False (keyword-only)
        Disable the file handler and only log to the console.
    log_level : str, default "INFO"
        Minimum level to emit.
    """
    logger.remove()

    def _console_format(record: dict[str, Any]) -> str:
        # Child output already carries its own label; skip the source location.
        if record["extra"].get("child") == CHILD_LOG_EXTRA:
            return "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | {message}\n{exception}"
        return (
            "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
            "<level>{message}</level>\n{exception}"
        )

    # stderr keeps console logging alive when stdout is a closed pipe.
    logger.add(
        sys.stderr,
        level=log_level,
        format=cast("Callable[[Any], str]", _console_format),
        colorize=True,
        enqueue=True,
    )
    if not no_log_file:
        file_path = log_file if log_file else DEFAULT_LOG_FILE
        with suppress(OSError):
            Path(file_path).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            file_path,
            rotation="1 MB",
            retention="10 days",
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
            enqueue=True,
        )


def create_lifespan(
    controller: ProcessController,
) -> Callable[[FastAPI], AbstractAsyncContextManager[None]]:
    """Create a lifespan that tears the child down when the server exits."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.controller = controller
        logger.info(
            f"Switcher ready; model server status at {controller.config.status_url}, "
            f"models in {controller.config.models_dir}",
        )

        yield

        logger.info("Shutting down application")
        try:
            await controller.shutdown()
        except Exception as exc:
            logger.error(f"Error during shutdown. {type(exc).__name__}: {exc}")

    return lifespan


def _format_validation_error(error: dict[str, Any]) -> str:
    location = [str(part) for part in error.get("loc", ()) if part != "body"]
    message = str(error.get("msg", "invalid value"))
    return f"{'.'.join(location)}: {message}" if location else message


def register_exception_handlers(app: FastAPI) -> None:
    """Map validation and controller errors to JSON responses."""

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        _request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = [_format_validation_error(error) for error in exc.errors()]
        return JSONResponse(status_code=HTTPStatus.BAD_REQUEST, content={"errors": errors})

    @app.exception_handler(InvalidArgumentError)
    async def invalid_argument_handler(
        _request: Request,
        exc: InvalidArgumentError,
    ) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"errors": [str(exc)]})

    @app.exception_handler(ControllerError)
    async def controller_error_handler(_request: Request, exc: ControllerError) -> JSONResponse:
        if exc.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            logger.error(f"{type(exc).__name__}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Global exception handler caught. {type(exc).__name__}: {exc}")
        return JSONResponse(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            content={"error": str(exc) or type(exc).__name__},
        )


def create_app(
    config: SwitcherConfig,
    *,
    controller: ProcessController | None = None,
) -> FastAPI:
    """Build the FastAPI application serving the control surface.

    Parameters
    ----------
    config : SwitcherConfig
        Validated configuration.
    controller : ProcessController, optional
        Controller to expose. A new one is built from ``config`` when omitted.

    Returns
    -------
    FastAPI
        Application with routes, middleware and error handlers registered.
    """
    if controller is None:
        controller = ProcessController(config, cpu_count=os.cpu_count())

    app = FastAPI(
        title="KoboldCpp switcher",
        description="Start, stop and inspect a local KoboldCpp model server",
        version=__version__,
        lifespan=create_lifespan(controller),
    )
    # Also set eagerly so the app works without running the lifespan.
    app.state.controller = controller
    app.state.switcher_config = config

    app.include_router(router)
    app.add_middleware(RequestTrackingMiddleware)
    register_exception_handlers(app)
    return app


def setup_server(config: SwitcherConfig) -> uvicorn.Config:
    """Configure logging, build the app and return a uvicorn config for it.

    Parameters
    ----------
    config : SwitcherConfig
        Configuration usually produced by ``load_config`` plus CLI overrides.

    Returns
    -------
    uvicorn.Config
        Ready to pass to ``uvicorn.Server(config).serve()``.
    """
    configure_logging(
        log_file=config.log_file,
        no_log_file=config.no_log_file,
        log_level=config.log_level,
    )
    app = create_app(config)

    logger.info(f"Starting server on {config.host}:{config.port}")
    return uvicorn.Config(
        app=app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=False,
    )


async def start(config: SwitcherConfig) -> None:
    """Run the switcher until uvicorn exits."""

    server_config = setup_server(config)
    server = uvicorn.Server(server_config)
    await server.serve()
