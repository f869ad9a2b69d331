"""Tests for line-buffered logging of the child's output streams."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from kobold_switcher.runner.output import OutputLineLogger


def _messages(records: list[dict[str, Any]]) -> list[str]:
    return [record["message"] for record in records if record["extra"].get("child") == "koboldcpp"]


def test_complete_lines_are_logged_and_fragment_buffered(log_records: list[dict[str, Any]]) -> None:
    output = OutputLineLogger("INFO")

    output.feed(b"hello\nwor")
    assert _messages(log_records) == ["[KoboldCpp] hello"]
    assert output.pending == "wor"

    output.feed(b"ld\n")
    assert _messages(log_records) == ["[KoboldCpp] hello", "[KoboldCpp] world"]
    assert output.pending == ""


def test_multibyte_character_split_across_chunks(log_records: list[dict[str, Any]]) -> None:
    output = OutputLineLogger("INFO")

    output.feed(b"caf\xc3")
    output.feed(b"\xa9\n")

    assert _messages(log_records) == ["[KoboldCpp] café"]


def test_carriage_returns_and_blank_lines_are_dropped(log_records: list[dict[str, Any]]) -> None:
    output = OutputLineLogger("INFO")

    output.feed(b"first\r\n\r\n\nsecond\r\n")

    assert _messages(log_records) == ["[KoboldCpp] first", "[KoboldCpp] second"]


def test_flush_emits_trailing_fragment(log_records: list[dict[str, Any]]) -> None:
    output = OutputLineLogger("INFO")

    output.feed(b"no newline")
    assert _messages(log_records) == []

    output.flush()
    assert _messages(log_records) == ["[KoboldCpp] no newline"]
    assert output.pending == ""


@pytest.mark.asyncio
async def test_drain_logs_until_eof_at_configured_level(log_records: list[dict[str, Any]]) -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"error one\nerror ")
    reader.feed_data(b"two")
    reader.feed_eof()

    await OutputLineLogger("ERROR").drain(reader)

    child_records = [r for r in log_records if r["extra"].get("child") == "koboldcpp"]
    assert [r["message"] for r in child_records] == ["[KoboldCpp] error one", "[KoboldCpp] error two"]
    assert {r["level"].name for r in child_records} == {"ERROR"}
