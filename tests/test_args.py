"""Tests for turning start requests into model server command lines."""

from __future__ import annotations

from pathlib import Path

import pytest

from kobold_switcher.runner.args import RunArgs, build_args, sanitize_model_reference
from kobold_switcher.runner.errors import InvalidArgumentError


def test_minimal_request_uses_model_and_cpu_count(tmp_path: Path) -> None:
    tokens = build_args(RunArgs(model="llama.gguf"), models_dir=tmp_path, cpu_count=8)

    assert tokens == ["--model", str(tmp_path / "llama.gguf"), "--threads", "8"]


def test_all_options_are_emitted_in_order(tmp_path: Path) -> None:
    run_args = RunArgs(
        model="llama.gguf",
        context_size=12288,
        gpu_layers=-1,
        threads=6,
        tensor_split=(1.0, 0.5),
    )

    tokens = build_args(run_args, models_dir=tmp_path, cpu_count=8)

    assert tokens == [
        "--model",
        str(tmp_path / "llama.gguf"),
        "--threads",
        "6",
        "--contextsize",
        "12288",
        "--gpulayers",
        "-1",
        "--tensor_split",
        "1",
        "0.5",
    ]


def test_threads_zero_is_passed_through() -> None:
    tokens = build_args(RunArgs(model="m.gguf", threads=0), cpu_count=8)

    assert tokens[2:4] == ["--threads", "0"]


@pytest.mark.parametrize("context_size", [200, 255, 262145])
def test_context_size_out_of_range_is_rejected(context_size: int) -> None:
    with pytest.raises(InvalidArgumentError, match=r"contextSize must be in range \[256 to 262144\]"):
        build_args(RunArgs(model="m.gguf", context_size=context_size), cpu_count=1)


@pytest.mark.parametrize("context_size", [256, 262144])
def test_context_size_bounds_are_inclusive(context_size: int) -> None:
    tokens = build_args(RunArgs(model="m.gguf", context_size=context_size), cpu_count=1)

    assert tokens[-2:] == ["--contextsize", str(context_size)]


def test_custom_context_range_is_honoured() -> None:
    with pytest.raises(InvalidArgumentError, match=r"\[1024 to 4096\]"):
        build_args(
            RunArgs(model="m.gguf", context_size=8192),
            context_size_range=(1024, 4096),
            cpu_count=1,
        )


def test_traversal_components_are_dropped(tmp_path: Path) -> None:
    path = sanitize_model_reference("../../etc/passwd", tmp_path)

    assert path == tmp_path / "etc" / "passwd"


def test_unsafe_characters_are_removed() -> None:
    assert sanitize_model_reference('my<model>?"|*.gguf') == Path("mymodel.gguf")


def test_trailing_dots_and_spaces_are_stripped() -> None:
    assert sanitize_model_reference("model.gguf. .") == Path("model.gguf")


def test_absolute_reference_keeps_its_anchor(tmp_path: Path) -> None:
    reference = str(tmp_path / "elsewhere" / "model.gguf")

    assert sanitize_model_reference(reference, Path("/unused")) == tmp_path / "elsewhere" / "model.gguf"


@pytest.mark.parametrize("reference", ["..", "???", "  ", "./.."])
def test_reference_that_sanitizes_to_nothing_is_rejected(reference: str) -> None:
    with pytest.raises(InvalidArgumentError):
        build_args(RunArgs(model=reference), cpu_count=1)


def test_whitespace_inside_a_token_is_rejected() -> None:
    with pytest.raises(InvalidArgumentError, match="whitespace"):
        build_args(RunArgs(model="my model.gguf"), cpu_count=1)


def test_model_name_is_the_file_stem() -> None:
    assert RunArgs(model="sub/llama-3.Q4_K_M.gguf").model_name == "llama-3.Q4_K_M"
