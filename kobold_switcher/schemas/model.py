"""Request and response bodies of the ``/model`` resource."""

from __future__ import annotations

from typing import Annotated, Any, ClassVar

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..runner.args import RunArgs
from ..runner.status import ModelState, ModelStatus


class SwitcherBaseModel(BaseModel):
    """Base model that accepts camelCase aliases and logs ignored fields."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    field_names: ClassVar[set[str] | None] = None

    @model_validator(mode="wrap")
    @classmethod
    def _log_extra_fields(cls, data: Any, handler: Any) -> Any:
        result = handler(data)
        if not isinstance(data, dict):
            return result
        field_names = cls.field_names
        if field_names is None:
            field_names = set()
            for name, field in cls.model_fields.items():
                field_names.add(name)
                if field.alias:
                    field_names.add(field.alias)
            cls.field_names = field_names
        ignored = data.keys() - field_names
        if ignored:
            logger.warning(f"Ignoring unknown request fields: {', '.join(sorted(ignored))}")
        return result


NonNegativeRatio = Annotated[float, Field(ge=0, allow_inf_nan=False)]


class RunModelRequest(SwitcherBaseModel):
    """Body of ``PUT /model``."""

    model: str = Field(..., min_length=1, description="Model file name or path.")
    context_size: int | None = Field(
        None,
        alias="contextSize",
        strict=True,
        description="Context window in tokens.",
    )
    gpu_layers: int | None = Field(
        None,
        alias="gpuLayers",
        strict=True,
        ge=-1,
        description="Layers to offload to the GPU; -1 offloads all of them.",
    )
    threads: int | None = Field(None, strict=True, ge=0, description="CPU threads to use.")
    tensor_split: list[NonNegativeRatio] | None = Field(
        None,
        alias="tensorSplit",
        min_length=2,
        description="Ratios for splitting the model across GPUs.",
    )

    def to_run_args(self) -> RunArgs:
        """Return the controller-facing arguments for this request."""

        return RunArgs(
            model=self.model,
            context_size=self.context_size,
            gpu_layers=self.gpu_layers,
            threads=self.threads,
            tensor_split=tuple(self.tensor_split) if self.tensor_split is not None else None,
        )


class ModelStatusResponse(BaseModel):
    """Body of ``GET /model``."""

    status: ModelState
    model: str | None = None
    error: str | None = None

    @classmethod
    def from_status(cls, status: ModelStatus) -> ModelStatusResponse:
        return cls(**status.as_payload())


class ErrorResponse(BaseModel):
    """Body returned for conflicts and server-side failures."""

    error: str


class ValidationErrorResponse(BaseModel):
    """Body returned for rejected requests."""

    errors: list[str]
