"""Translate a validated start request into child process arguments."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import os
from pathlib import Path
import re

from ..const import MAX_CONTEXT_SIZE, MIN_CONTEXT_SIZE
from .errors import InvalidArgumentError

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f\x7f-\x9f]')
_WINDOWS_RESERVED = re.compile(r"^(con|prn|aux|nul|com\d|lpt\d)(\..*)?$", re.IGNORECASE)
_TRAVERSAL_PARTS = frozenset({"", ".", ".."})


@dataclass(frozen=True, slots=True)
class RunArgs:
    """Validated parameters of a start request."""

    model: str
    context_size: int | None = None
    gpu_layers: int | None = None
    threads: int | None = None
    tensor_split: tuple[float, ...] | None = None

    @property
    def model_name(self) -> str:
        """Return the sanitized model file name without its extension."""

        return sanitize_model_reference(self.model).stem


def _sanitize_component(part: str) -> str:
    cleaned = _UNSAFE_CHARS.sub("", part).rstrip(". ")
    if cleaned in _TRAVERSAL_PARTS or _WINDOWS_RESERVED.match(cleaned):
        return ""
    return cleaned


def sanitize_model_reference(reference: str, models_dir: Path | None = None) -> Path:
    """Return a filesystem-safe path for ``reference``.

    Unsafe characters are removed from every path component and ``.``/``..``
    components are dropped, so the result cannot climb out of its anchor.
    Absolute references keep their anchor; relative ones are placed under
    ``models_dir`` when it is provided.

    Raises
    ------
    InvalidArgumentError
        If nothing usable remains after sanitization.
    """

    path = Path(reference.strip())
    anchor = path.anchor
    parts = path.parts[1:] if anchor else path.parts
    cleaned = [part for part in (_sanitize_component(p) for p in parts) if part]
    if not cleaned:
        raise InvalidArgumentError(f"model reference {reference!r} is not a valid file name")

    relative = Path(*cleaned)
    if anchor:
        return Path(anchor) / relative
    if models_dir is not None:
        return Path(models_dir) / relative
    return relative


def _format_ratio(value: float) -> str:
    number = float(value)
    return str(int(number)) if number.is_integer() else repr(number)


def build_args(
    run_args: RunArgs,
    *,
    models_dir: Path | None = None,
    context_size_range: tuple[int, int] = (MIN_CONTEXT_SIZE, MAX_CONTEXT_SIZE),
    cpu_count: int | None = None,
) -> list[str]:
    """Return the command-line tokens for ``run_args``.

    Parameters
    ----------
    run_args : RunArgs
        Request parameters already checked by the request schema.
    models_dir : Path | None, optional
        Base directory for relative model references.
    context_size_range : tuple[int, int], optional
        Inclusive ``(min, max)`` bounds for ``context_size``.
    cpu_count : int | None, optional
        Thread count used when the request does not specify one. Defaults to
        the host's available parallelism.

    Returns
    -------
    list[str]
        Tokens to append after the binary and its default flags.

    Raises
    ------
    InvalidArgumentError
        If the model reference is unusable, the context size is out of range,
        or a token would contain whitespace.
    """

    model_path = sanitize_model_reference(run_args.model, models_dir)
    threads = run_args.threads
    if threads is None:
        threads = cpu_count if cpu_count is not None else (os.cpu_count() or 1)

    tokens = ["--model", str(model_path), "--threads", str(threads)]

    if run_args.context_size is not None:
        low, high = context_size_range
        if not (low <= run_args.context_size <= high):
            raise InvalidArgumentError(f"contextSize must be in range [{low} to {high}]")
        tokens.extend(["--contextsize", str(run_args.context_size)])

    if run_args.gpu_layers is not None:
        tokens.extend(["--gpulayers", str(run_args.gpu_layers)])

    if run_args.tensor_split is not None:
        tokens.append("--tensor_split")
        tokens.extend(_format_ratio(value) for value in run_args.tensor_split)

    _ensure_no_whitespace(tokens)
    return tokens


def _ensure_no_whitespace(tokens: Sequence[str]) -> None:
    for token in tokens:
        if any(ch.isspace() for ch in token):
            raise InvalidArgumentError(f"argument {token!r} must not contain whitespace")
