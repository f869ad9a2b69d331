"""FastAPI routes controlling the supervised model server."""

from __future__ import annotations

from http import HTTPStatus

from fastapi import APIRouter, Request, Response
from loguru import logger

from ..runner.controller import ProcessController
from ..schemas.model import (
    ErrorResponse,
    ModelStatusResponse,
    RunModelRequest,
    ValidationErrorResponse,
)

router = APIRouter()


def get_controller(request: Request) -> ProcessController:
    """Return the controller attached to the application state."""

    controller: ProcessController = request.app.state.controller
    return controller


@router.get(
    "/probe",
    status_code=HTTPStatus.NO_CONTENT,
    response_class=Response,
    summary="Liveness probe of the switcher itself",
)
async def probe() -> Response:
    return Response(status_code=HTTPStatus.NO_CONTENT)


@router.get(
    "/model",
    response_model=ModelStatusResponse,
    response_model_exclude_none=True,
    responses={500: {"model": ErrorResponse}},
    summary="Current state of the model server",
)
async def get_model(request: Request) -> ModelStatusResponse:
    status = await get_controller(request).get_model_status()
    return ModelStatusResponse.from_status(status)


@router.put(
    "/model",
    status_code=HTTPStatus.CREATED,
    response_class=Response,
    responses={
        400: {"model": ValidationErrorResponse},
        409: {"model": ErrorResponse},
        500: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
    summary="Start a model, replacing the running one",
)
async def put_model(request: Request, body: RunModelRequest) -> Response:
    """Start ``body.model``.

    Answers once the server process is spawned; poll ``GET /model`` to see it
    become ``online``.
    """

    logger.info(f"Start requested for model '{body.model}'")
    await get_controller(request).start(body.to_run_args())
    return Response(status_code=HTTPStatus.CREATED)


@router.delete(
    "/model",
    status_code=HTTPStatus.NO_CONTENT,
    response_class=Response,
    responses={409: {"model": ErrorResponse}},
    summary="Stop the running model",
)
async def delete_model(request: Request) -> Response:
    logger.info("Stop requested")
    await get_controller(request).stop()
    return Response(status_code=HTTPStatus.NO_CONTENT)
