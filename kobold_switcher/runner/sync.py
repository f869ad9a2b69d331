"""Query the child's status endpoint for the model it has loaded."""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger

from ..const import DEFAULT_STATUS_REQUEST_TIMEOUT, DEFAULT_STATUS_URL
from .errors import ChildUnreachableError, UnexpectedStatusPayloadError


def parse_model_name(result: str) -> str:
    """Return the model name from a ``<namespace>/<name>`` identifier.

    Everything after the first separator is the name; identifiers without a
    separator are returned unchanged.
    """

    _, sep, name = result.partition("/")
    return name if sep else result


class StatusSynchronizer:
    """Issue single status requests against the child's HTTP API."""

    def __init__(
        self,
        url: str = DEFAULT_STATUS_URL,
        *,
        timeout: float = DEFAULT_STATUS_REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def fetch_loaded_model(self) -> str:
        """Return the name of the model the child currently serves.

        Raises
        ------
        ChildUnreachableError
            If the request fails or the child answers with a non-success code.
        UnexpectedStatusPayloadError
            If the child answers but the body has no string ``result``.
        """

        try:
            response = await self._client.get(self.url)
        except httpx.HTTPError as exc:
            raise ChildUnreachableError(f"request to {self.url} failed: {exc!r}") from exc

        if not response.is_success:
            raise ChildUnreachableError(
                f"request unsuccessful, received code {response.status_code} ({response.reason_phrase})",
            )

        try:
            data: Any = response.json()
        except ValueError as exc:
            raise UnexpectedStatusPayloadError(f"status body is not JSON: {exc}") from exc

        result = data.get("result") if isinstance(data, dict) else None
        if not isinstance(result, str) or not result:
            raise UnexpectedStatusPayloadError(f"status body has no model identifier: {data!r}")

        name = parse_model_name(result)
        logger.debug(f"Child reports loaded model '{name}'")
        return name

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""

        await self._client.aclose()
