"""Tests for querying the child's status endpoint."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import pytest

from kobold_switcher.runner.errors import ChildUnreachableError, UnexpectedStatusPayloadError
from kobold_switcher.runner.sync import StatusSynchronizer, parse_model_name


def _synchronizer(handler: Callable[[httpx.Request], httpx.Response]) -> StatusSynchronizer:
    return StatusSynchronizer("http://child.test/api/v1/model", transport=httpx.MockTransport(handler))


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        ("koboldcpp/llama-3", "llama-3"),
        ("llama-3", "llama-3"),
        ("koboldcpp/org/model", "org/model"),
    ],
)
def test_parse_model_name(result: str, expected: str) -> None:
    assert parse_model_name(result) == expected


@pytest.mark.asyncio
async def test_fetch_returns_name_after_namespace() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(200, json={"result": "koboldcpp/mistral"})

    sync = _synchronizer(handler)
    try:
        assert await sync.fetch_loaded_model() == "mistral"
    finally:
        await sync.aclose()
    assert seen == ["http://child.test/api/v1/model"]


@pytest.mark.asyncio
async def test_connection_failure_is_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    sync = _synchronizer(handler)
    with pytest.raises(ChildUnreachableError):
        await sync.fetch_loaded_model()
    await sync.aclose()


@pytest.mark.asyncio
async def test_error_status_is_unreachable() -> None:
    sync = _synchronizer(lambda request: httpx.Response(503))

    with pytest.raises(ChildUnreachableError, match="received code 503"):
        await sync.fetch_loaded_model()
    await sync.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"other": "x"}),
        httpx.Response(200, json={"result": ""}),
        httpx.Response(200, json={"result": 42}),
        httpx.Response(200, json=["koboldcpp/x"]),
    ],
)
async def test_unexpected_payload(response: httpx.Response) -> None:
    sync = _synchronizer(lambda request: response)

    with pytest.raises(UnexpectedStatusPayloadError):
        await sync.fetch_loaded_model()
    await sync.aclose()
